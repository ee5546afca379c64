"""backend/ -- Clients for the external backend-as-a-service.

Layer rule: backend/ imports only core/, cache/ and third-party libraries.
auth/, api/ and web/ import from backend/, not the other way around.
"""
