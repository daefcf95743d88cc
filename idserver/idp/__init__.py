"""
OpenID Connect endpoints (authorize, token, device, userinfo, introspect,
revoke, logout) plus discovery.
"""
