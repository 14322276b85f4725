"""auth/ -- Session and action-token core for SessionGate.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or mail/.
api/ imports from auth/, not the other way around. The orchestrator reaches
the mailer through a collaborator passed in at construction.
"""
