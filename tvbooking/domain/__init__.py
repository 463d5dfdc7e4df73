"""Domain packages - bookings, coverage and payments"""
