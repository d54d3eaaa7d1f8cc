"""
Clients for the remote contract system.
"""
