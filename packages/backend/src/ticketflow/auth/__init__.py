"""Authentication and authorization.

Learn: Sign-in happens at the external identity provider. It issues
JWT access tokens carrying the user id (sub) and role; this service
only verifies them. The same verification backs both HTTP requests
(Bearer header) and the WebSocket auth handshake.
"""
