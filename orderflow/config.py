import os
from pathlib import Path
from dotenv import load_dotenv

env_path = Path(__file__).parent / '.env'
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orderflow.db")

# --- Engine defaults (branch and rule data is always passed in explicitly) ---
DEFAULT_SORTING_WINDOW_HOURS = float(os.getenv("DEFAULT_SORTING_WINDOW_HOURS", "6"))
DEFAULT_DELIVERY_FEE = int(os.getenv("DEFAULT_DELIVERY_FEE", "200"))
DEFAULT_DISTANCE_KM = float(os.getenv("DEFAULT_DISTANCE_KM", "5"))
CURRENCY = os.getenv("CURRENCY", "KES")

# Google Directions accepts at most 25 waypoints per request
MAX_ROUTE_STOPS = int(os.getenv("MAX_ROUTE_STOPS", "25"))

# --- Routing collaborator ---
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "")
GOOGLE_DIRECTIONS_URL = os.getenv(
    "GOOGLE_DIRECTIONS_URL", "https://maps.googleapis.com/maps/api/directions/json"
)
ROUTING_TIMEOUT_SECONDS = float(os.getenv("ROUTING_TIMEOUT_SECONDS", "10"))

# --- Local LLM (Ollama exposes an OpenAI compatible API) ---
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "http://localhost:11434/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY", "ollama")
LLM_MODEL = os.getenv("LLM_MODEL", "llama3.2:3b")
