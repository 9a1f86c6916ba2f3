# --------------------------------------------------
# FRESHNESS
# --------------------------------------------------

# A location older than this is drawn as stale
FRESHNESS_MAX_AGE_MS = 120_000

# --------------------------------------------------
# NEARBY
# --------------------------------------------------

# 1 mile
NEARBY_RADIUS_METERS = 1609.34

# --------------------------------------------------
# MARKER SPREAD
# --------------------------------------------------

SPREAD_BASE_RADIUS_METERS = 20.0
SPREAD_EXTRA_PER_MEMBER_METERS = 5.0

# 5 decimals ~ 1.1 m grid
COORD_ROUND_DECIMALS = 5

# --------------------------------------------------
# REALTIME
# --------------------------------------------------

# 0 = unbounded; when bounded, events arriving on a full queue are dropped
REALTIME_QUEUE_MAXSIZE = 0

# Realtime rows for users outside the relevant set join the set
REALTIME_ADMIT_UNKNOWN = True

# --------------------------------------------------
# WRITE POLICY
# --------------------------------------------------

# "arrival": last applied update wins
# "timestamp": an update older than the cached updated_at is ignored
LOCATION_WRITE_POLICY = "arrival"

# --------------------------------------------------
# IMAGE PREFETCH
# --------------------------------------------------

# Avatar URLs remembered as already fetched, shared across sessions
IMAGE_PREFETCH_MAX_SEEN = 2048
