import os

SERVICE_NAME = "dispatch-service"
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()

DATABASE_URL = os.getenv("DISPATCH_DB")
REDIS_URL = os.getenv("REDIS_URL")  # optional, match cache disabled without it
RABBIT_URL = os.getenv("RABBIT_URL")  # optional, events disabled without it

GEOCODER_URL = os.getenv("GEOCODER_URL") or "https://nominatim.openstreetmap.org"
GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT") or "dispatch-service/0.1"
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT") or "2.0")

MATCH_DEFAULT_RADIUS_KM = float(os.getenv("MATCH_DEFAULT_RADIUS_KM") or "50")
MATCH_MAX_RADIUS_KM = 200.0
MATCH_CACHE_TTL_SECONDS = int(os.getenv("MATCH_CACHE_TTL_SECONDS") or "60")

MATCH_WEIGHTS = {
    "proximity": float(os.getenv("MATCH_WEIGHT_PROXIMITY") or "0.30"),
    "availability": float(os.getenv("MATCH_WEIGHT_AVAILABILITY") or "0.20"),
    "specialization": float(os.getenv("MATCH_WEIGHT_SPECIALIZATION") or "0.20"),
    "rating": float(os.getenv("MATCH_WEIGHT_RATING") or "0.15"),
    "price": float(os.getenv("MATCH_WEIGHT_PRICE") or "0.15"),
}
