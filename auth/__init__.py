"""auth/ -- Session and authentication state machine for ClinicDesk.

Layer rule: auth/ imports from backend/, cache/ and core/ plus third-party
libraries. It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
