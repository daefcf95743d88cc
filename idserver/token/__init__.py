"""
Token issuance, validation and signing key management.
"""
