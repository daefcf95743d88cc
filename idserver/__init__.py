"""
OpenID Connect identity provider: client registry, authorization sessions,
token issuance/validation, grant flows and background pruning.
"""
