"""Payments domain - Stripe authorization holds, captures and reconciliation"""
