"""Notifications and scheduled maintenance jobs"""
