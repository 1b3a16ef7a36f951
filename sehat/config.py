import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")

# LLM configuration (triage agent)
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "auto")
LLM_MODEL = os.getenv("LLM_MODEL", "")  # empty: the provider's small default model

DATABASE_PATH = os.getenv("DATABASE_PATH", "sehat.db")

DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_MAX_CONNECTIONS = int(os.getenv("DATABASE_MAX_CONNECTIONS", "5"))
SEED_DEMO_RESPONDERS = _flag("SEED_DEMO_RESPONDERS", "true")

# Dispatch ranking
FIELD_UNIT_SPEED_KMH = float(os.getenv("FIELD_UNIT_SPEED_KMH", "40"))
FACILITY_SPEED_KMH = float(os.getenv("FACILITY_SPEED_KMH", "30"))
DISPATCH_CANDIDATE_LIMIT = int(os.getenv("DISPATCH_CANDIDATE_LIMIT", "5"))

# Facilities without a geocode get a stable estimate around the region center
ESTIMATE_FACILITY_COORDINATES = _flag("ESTIMATE_FACILITY_COORDINATES", "true")
REGION_CENTER_LAT = float(os.getenv("REGION_CENTER_LAT", "24.8607"))
REGION_CENTER_LNG = float(os.getenv("REGION_CENTER_LNG", "67.0011"))
FACILITY_ESTIMATE_RADIUS_KM = float(os.getenv("FACILITY_ESTIMATE_RADIUS_KM", "15"))

# Event bus
EVENT_RECOVERY_INTERVAL_SECONDS = float(os.getenv("EVENT_RECOVERY_INTERVAL_SECONDS", "30"))
EVENT_HANDLER_TIMEOUT_SECONDS = float(os.getenv("EVENT_HANDLER_TIMEOUT_SECONDS", "60"))
EVENT_PROCESSING_STALE_SECONDS = float(os.getenv("EVENT_PROCESSING_STALE_SECONDS", "300"))
EVENT_RECOVERY_ENABLED = _flag("EVENT_RECOVERY_ENABLED", "true")

# Agents
AGENT_AUTONOMOUS_INTERVAL_SECONDS = float(os.getenv("AGENT_AUTONOMOUS_INTERVAL_SECONDS", "300"))
PATTERN_WINDOW_MINUTES = int(os.getenv("PATTERN_WINDOW_MINUTES", "60"))
PATTERN_RADIUS_KM = float(os.getenv("PATTERN_RADIUS_KM", "2"))
PATTERN_MIN_CASES = int(os.getenv("PATTERN_MIN_CASES", "3"))
