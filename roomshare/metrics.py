from prometheus_client import Counter, Gauge

ACTIVE_SUBSCRIPTIONS = Gauge('roomshare_active_subscriptions', 'Live change feed subscriptions')
EVENTS_PUBLISHED = Counter('roomshare_events_published_total', 'Change events published', ['entity', 'change'])
SLOW_CONSUMERS_DROPPED = Counter('roomshare_slow_consumers_dropped_total', 'Subscribers disconnected for falling behind')
ROOMS_CREATED = Counter('roomshare_rooms_created_total', 'Rooms created')
ROOMS_REAPED = Counter('roomshare_rooms_reaped_total', 'Expired rooms deleted', ['path'])
ORPHAN_BLOBS_REMOVED = Counter('roomshare_orphan_blobs_removed_total', 'Blobs deleted by reconciliation')
