"""
API route modules for the operational surface.
"""
