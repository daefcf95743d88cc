"""
Resource owners and password verification.
"""
