# ---------------------------------------------------------------------------
# NOTE: This module is imported pretty much everywhere so it stays free of
# side-effects.  Runtime-tunable values live in ``stacked.config``; only true
# constants of the wire format and HTTP surface are defined here.
# ---------------------------------------------------------------------------

from typing import Final

# Base API prefix (all HTTP routes are served under /api/*)
API_PREFIX: Final[str] = "/api"

# Router prefixes (relative to API_PREFIX)
SYNC_STATUS_PATH: Final[str] = "/sync/status"
SOCKET_PATH: Final[str] = "/socket"

# Origin recorded on events the poller synthesizes from raw storage changes.
# It never equals a real session id, so such events are never self-filtered.
EXTERNAL_ORIGIN: Final[str] = "external-change"

# Presence records unseen for this long are evicted (seconds).
PRESENCE_STALE_SECONDS: Final[int] = 5 * 60

# How many (origin_id, emitted_at) pairs a service remembers for de-duplication
SEEN_EVENTS_WINDOW: Final[int] = 256
