"""Request context management for observability.

Context variables for request tracking across async boundaries.
The webhook pipeline also binds the provider event id and the reference it
touches so every log line emitted while reconciling carries them.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Provider event currently being reconciled (evt_...)
event_id_var: ContextVar[str] = ContextVar("event_id", default="")

# "<reference_type>:<reference_id>" of the entity the event settles
reference_var: ContextVar[str] = ContextVar("reference", default="")
