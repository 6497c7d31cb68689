"""auth/ -- Accounts, credentials and sessions for Xuthority.

Password registration and login (authenticator), Google/LinkedIn federation
(federation, oauth), password reset (reset), and the bearer-token primitives
they share (tokens).

Layer rule: auth/ imports from core/ and from notify.dispatcher only.
It does NOT import from api/. api/ imports from auth/, not the other way
around.
"""
