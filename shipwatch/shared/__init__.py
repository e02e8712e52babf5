"""
Shared Kernel Module
====================

Generic infrastructure used by the escalation bounded context and the
application shell: structured logging and HTTP middleware.

DO NOT add escalation business logic to the shared kernel.
"""
