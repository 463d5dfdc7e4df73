"""Bookings domain - Booking creation, staffing and worker actions"""
