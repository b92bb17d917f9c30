"""Live event notifications for the OBS broadcast overlay.

Fans trading-day bells, trade notices and leaderboard snapshots out to
every connected overlay over two redundant transports: a WebSocket
channel and a server-sent events push stream.

Architecture:
    POST /api/obs/bell, /api/obs/notify, or Redis "tradesim:live"
    -> BroadcastHub.publish() -> ConnectionRegistry.for_each()
    -> per-connection queue -> channel / stream endpoint -> OverlayClient
    -> OverlayState (notification log, day state, leaderboard)

Delivery is best effort: nothing is persisted, and a viewer that is not
connected when an event is published never sees it.
"""
