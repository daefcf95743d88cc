"""
Client registry: registered relying-party applications.
"""
