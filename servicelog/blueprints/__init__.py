"""
Service Log Engine
Blueprint registry.
"""
