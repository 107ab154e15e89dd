import os
from pathlib import Path
from dotenv import load_dotenv
import logging

# Load environment variables from .env file
dotenv_path = Path('.') / '.env'
load_dotenv(dotenv_path=dotenv_path)

# --- LLM Configuration ---
LLM_MODEL = os.getenv("LLM_MODEL", "claude-3-5-sonnet-20240620") # Model for the 'main' role
RESEARCH_MODEL = os.getenv("RESEARCH_MODEL", "perplexity/sonar-pro") # Model for the 'research' role
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
PERPLEXITY_API_KEY = os.getenv("PERPLEXITY_API_KEY")
MAX_TOKENS = int(os.getenv("MAX_TOKENS", 4000))
TEMPERATURE = float(os.getenv("TEMPERATURE", 0.7))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", 0)) # Schema re-asks only; transport retries belong to litellm

# --- Task Pipeline Configuration ---
DEFAULT_SUBTASKS = int(os.getenv("DEFAULT_SUBTASKS", 3))
DEFAULT_NUM_TASKS = int(os.getenv("DEFAULT_NUM_TASKS", 10))
DEFAULT_PRIORITY = os.getenv("DEFAULT_PRIORITY", "medium")
DEFAULT_SCOPE = os.getenv("DEFAULT_SCOPE", "master")
PROJECT_NAME = os.getenv("PROJECT_NAME", "Taskloom Project")
PROJECT_VERSION = "0.1.0"
PROJECT_ROOT = Path(os.getenv("PROJECT_ROOT", "."))
TASKS_FILE_PATH = Path(os.getenv("TASKS_FILE_PATH", "tasks/tasks.json"))
COMPLEXITY_REPORT_DIR = Path(os.getenv("COMPLEXITY_REPORT_DIR", "reports"))

# --- Retrieval Configuration ---
RECENT_WINDOW_DAYS = int(os.getenv("RECENT_WINDOW_DAYS", 7))
MAX_CONTEXT_FILE_BYTES = int(os.getenv("MAX_CONTEXT_FILE_BYTES", 200_000))
PROJECT_TREE_MAX_DEPTH = int(os.getenv("PROJECT_TREE_MAX_DEPTH", 3))

# --- Logging ---
LOG_LEVEL_STR = os.getenv("LOG_LEVEL", "INFO").upper()
DEBUG = os.getenv("DEBUG", "False").lower() == "true"
LOG_LEVEL = getattr(logging, LOG_LEVEL_STR, logging.INFO)

# --- Validation ---
def check_api_keys():
    """Checks if necessary API keys are set."""
    keys_needed = []
    # Basic check - litellm needs at least one primary key
    if not any([ANTHROPIC_API_KEY, GOOGLE_API_KEY, OPENAI_API_KEY]):
         keys_needed.append("At least one LLM API Key (ANTHROPIC_API_KEY, GOOGLE_API_KEY, or OPENAI_API_KEY)")

    if RESEARCH_MODEL.startswith("perplexity/") and not PERPLEXITY_API_KEY:
        keys_needed.append("PERPLEXITY_API_KEY (for the research role)")

    return keys_needed
