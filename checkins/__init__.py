"""
checkins — ephemeral developer presence check-ins over a broadcast relay.

Pieces:
- A relay that validates signed submissions and fans them out to every client.
- A client that keeps one relay connection alive (backoff, history window),
  reconciles what it hears into a newest-per-identity buffer, and gates its
  own submissions behind a local cooldown.
- HMAC-SHA256 signatures with a signing timestamp so the relay can reject
  forgeries and replays.

Set CHECKINS_SIGNING_SECRET on ALL processes (relay + clients) before running.
"""
__all__ = [
    "config",
    "connection",
    "cooldown",
    "crypto",
    "errors",
    "events",
    "framing",
    "history",
    "messages",
    "node",
    "run_node",
    "snippets",
]
