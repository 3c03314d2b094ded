"""audit/ -- Append-only security audit log for OrgTree.

Every security decision (failed login, bad token, CSRF failure, permission
denial, membership change) is written here. Writes are fail-open: a broken
audit sink never blocks the operation being audited.

Layer rule: audit/ may import auth.errors and core/. It does NOT import from
api/, and nothing else in auth/ is imported here.
"""
