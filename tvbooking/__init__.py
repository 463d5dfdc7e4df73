"""TV mounting booking backend"""
