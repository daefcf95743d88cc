"""
In-flight authorization state (authorization codes and device authorizations).
"""
