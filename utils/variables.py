'''
Define variables used across the entire applications
'''


SESSION_IDLE_TIMEOUT_S = 600       # seconds, gap that closes a movement session
GEOFENCE_HYSTERESIS = 0.05         # exit confirmed beyond radius * (1 + this)

EARTH_RADIUS_M = 6_371_000         # mean radius, spherical model

HEATMAP_SCALE = 1000               # 1/1000 degree grid, ~111 m cells
HEATMAP_MAX_TIMESTAMPS = 100       # timestamps kept per heatmap cell
LOCATION_KEY_SCALE = 100           # 1/100 degree, ~1.1 km "distinct place"

DEVICE_QUEUE_CAPACITY = 100        # pending pings per device before back-pressure
DEVICE_IDLE_DRAIN_S = 30           # drain task exits after this long with no work

STORE_RETRY_ATTEMPTS = 5
STORE_RETRY_WAIT_S = 2

GPS_EXPECTED_ACCURACY_M = 100      # worse than this on GPS hardware → advisory
WIFI_EXPECTED_ACCURACY_M = 1000    # same for WiFi / network positioning

TIMEFRAME_DAYS = {"1d": 1, "7d": 7, "30d": 30, "90d": 90}
DEFAULT_TIMEFRAME = "7d"
REPORT_TYPES = ("summary", "sessions", "heatmap")

MAX_CLOCK_SKEW_S = 300             # recorded timestamps further ahead of receipt are rejected

# driving behaviour between consecutive pings of a session
MIN_DRIVING_SPEED_KMH = 15         # below this the device is walking / stationary
SPEEDING_KMH = 120
HARD_BRAKING_MS2 = -6.5
RAPID_ACCELERATION_MS2 = 3.5
HARSH_TURN_G = 0.5
HARSH_TURN_MIN_DEG = 30
HARSH_TURN_MIN_KMH = 30

MOVEMENT_ALERT_WINDOW_MIN = 10     # default time window of a movement alert
