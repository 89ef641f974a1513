"""
Identity, credentials and storage for the authorization server.
"""
