from pathlib import Path
from dotenv import load_dotenv
import os

load_dotenv()

BASE_DIR = Path(__file__).parent

# Data directory (gitignored)
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(exist_ok=True)

# Database (backs the key-value persistence store)
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR}/wayfare.db")

# GTFS Static
# King County Metro publishes its feed at https://metro.kingcounty.gov/GTFS/
GTFS_STATIC_URL: str = os.getenv(
    "GTFS_STATIC_URL", "https://metro.kingcounty.gov/GTFS/google_transit.zip"
)
GTFS_REFRESH_HOURS: int = int(os.getenv("GTFS_REFRESH_HOURS", "24"))
# stop_times.txt is 10^5–10^6 rows; by default it is not written to the store
GTFS_CACHE_STOP_TIMES: bool = os.getenv("GTFS_CACHE_STOP_TIMES", "false").lower() == "true"

# Real-time feed (OneBusAway REST API)
# Request a key from oba_api_key@soundtransit.org
FEED_BASE_URL: str = os.getenv(
    "FEED_BASE_URL", "https://api.pugetsound.onebusaway.org/api/where"
)
FEED_API_KEY: str = os.getenv("FEED_API_KEY", "")  # appended as ?key= on each request
FEED_AGENCY_ID: str = os.getenv("FEED_AGENCY_ID", "1")
FEED_TIMEOUT_SECONDS: float = float(os.getenv("FEED_TIMEOUT_SECONDS", "10"))

# Retry policy for transient feed failures
FEED_MAX_ATTEMPTS: int = int(os.getenv("FEED_MAX_ATTEMPTS", "3"))
FEED_BACKOFF_BASE_SECONDS: float = float(os.getenv("FEED_BACKOFF_BASE_SECONDS", "1.0"))

# Response cache TTLs (seconds)
ARRIVALS_TTL_SECONDS: float = float(os.getenv("ARRIVALS_TTL_SECONDS", "30"))
VEHICLE_TTL_SECONDS: float = float(os.getenv("VEHICLE_TTL_SECONDS", "5"))
PRIORITY_VEHICLE_TTL_SECONDS: float = float(os.getenv("PRIORITY_VEHICLE_TTL_SECONDS", "3"))
STOPS_NEAR_TTL_SECONDS: float = float(os.getenv("STOPS_NEAR_TTL_SECONDS", "60"))
ALERTS_TTL_SECONDS: float = float(os.getenv("ALERTS_TTL_SECONDS", "120"))
FEED_CACHE_MAX_ENTRIES: int = int(os.getenv("FEED_CACHE_MAX_ENTRIES", "2000"))

# Vehicle sampling
VEHICLE_SAMPLE_STOPS: int = int(os.getenv("VEHICLE_SAMPLE_STOPS", "3"))
PRIORITY_SAMPLE_STOPS: int = int(os.getenv("PRIORITY_SAMPLE_STOPS", "2"))
STOP_STAGGER_SECONDS: float = float(os.getenv("STOP_STAGGER_SECONDS", "0.1"))

# Adaptive vehicle polling (seconds)
POLL_INITIAL_SECONDS: float = float(os.getenv("POLL_INITIAL_SECONDS", "8"))
POLL_FLOOR_SECONDS: float = float(os.getenv("POLL_FLOOR_SECONDS", "5"))
POLL_STEP_DOWN_SECONDS: float = float(os.getenv("POLL_STEP_DOWN_SECONDS", "0.5"))
POLL_CEILING_SECONDS: float = float(os.getenv("POLL_CEILING_SECONDS", "15"))
POLL_STEP_UP_SECONDS: float = float(os.getenv("POLL_STEP_UP_SECONDS", "2"))
POLL_ERROR_THRESHOLD: int = int(os.getenv("POLL_ERROR_THRESHOLD", "2"))
POLL_FOLLOWING_SECONDS: float = float(os.getenv("POLL_FOLLOWING_SECONDS", "3"))

# Geocoding (Nominatim-compatible endpoint)
GEOCODER_URL: str = os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org")
GEOCODER_USER_AGENT: str = os.getenv("GEOCODER_USER_AGENT", "wayfare/0.1")

# API
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8000"))
CORS_ORIGINS: list[str] = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
]
INGEST_API_KEY: str = os.getenv("INGEST_API_KEY", "")

# Reliability
# Rush-hour and weekend checks are made in the agency's local time
TRANSIT_TIMEZONE: str = os.getenv("TRANSIT_TIMEZONE", "America/Los_Angeles")

# Routing constraints
MAX_ROUTES: int = int(os.getenv("MAX_ROUTES", "5"))
MAX_DIRECT_OPTIONS: int = int(os.getenv("MAX_DIRECT_OPTIONS", "2"))
# Walking
MAX_WALK_METRES: int = int(os.getenv("MAX_WALK_METRES", "1000"))
MAX_TRANSFER_WALK_METRES: int = int(os.getenv("MAX_TRANSFER_WALK_METRES", "400"))
WALK_SPEED_M_PER_MIN: float = float(os.getenv("WALK_SPEED_M_PER_MIN", "83.4"))  # ≈ 5 km/h

# Ride-time estimates (minutes) used in place of a timetable search
DIRECT_RIDE_MINUTES: int = int(os.getenv("DIRECT_RIDE_MINUTES", "30"))
TRANSFER_FIRST_LEG_MINUTES: int = int(os.getenv("TRANSFER_FIRST_LEG_MINUTES", "20"))
TRANSFER_SECOND_LEG_MINUTES: int = int(os.getenv("TRANSFER_SECOND_LEG_MINUTES", "15"))
TRANSFER_WAIT_MINUTES: int = int(os.getenv("TRANSFER_WAIT_MINUTES", "5"))
DEFAULT_WAIT_MINUTES: int = int(os.getenv("DEFAULT_WAIT_MINUTES", "5"))
