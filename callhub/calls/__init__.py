"""
Call session core.

Presence, availability, the recipient lock, the session store, billing timers,
the session state machine and the disconnect reconciler live here. Everything
that talks to Postgres, push gateways or HTTP sits in `callhub.services` and
`callhub.routes` behind the protocols in `collaborators`.
"""
