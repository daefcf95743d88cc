"""
Grant flow controller: protocol state machines per grant type.
"""
