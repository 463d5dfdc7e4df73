"""Coverage domain - ZIP/polygon resolution, service areas and job offers"""
