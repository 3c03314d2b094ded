"""auth/ -- Authentication, session and authorization package for OrgTree.

Modules:
  tokens.py       access token codec, password hashing, refresh-secret helpers
  sessions.py     refresh token manager (issue / validate / rotate / revoke)
  permissions.py  organization access resolver (global role + membership)
  csrf.py         double-submit CSRF guard
  store.py        user, organization and membership repositories
  dependencies.py FastAPI Depends() helpers wiring the above into requests

Layer rule: auth/ imports core/, audit/ and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
