"""mail/ -- Outbound transactional email for SessionGate.

Layer rule: mail/ imports only stdlib + auth.models. It does NOT import from
api/ or any other auth/ module. auth/orchestrator.py calls it through a
duck-typed `mailer` collaborator, so tests can pass a recording fake.
"""
