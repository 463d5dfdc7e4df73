"""Routers that sit outside a single domain (webhooks, maintenance, realtime)"""
