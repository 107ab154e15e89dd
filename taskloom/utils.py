import json
import logging
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple, Union
import re

from rich.logging import RichHandler
from . import config
from .errors import UpstreamError, ValidationError

# --- Logging Setup ---
log = logging.getLogger("taskloom")

def setup_logging(level: Optional[int] = None, show_path: Optional[bool] = None) -> logging.Logger:
    """Attaches a Rich console handler to the package logger. Called by the CLI, never on import."""
    if not any(isinstance(h, RichHandler) for h in log.handlers):
        handler = RichHandler(rich_tracebacks=True, show_path=config.DEBUG if show_path is None else show_path)
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        log.addHandler(handler)
    log.setLevel(level if level is not None else config.LOG_LEVEL)
    log.propagate = False
    return log

# --- File Operations ---
def read_json(filepath: Path) -> Optional[Dict[str, Any]]:
    """Reads and parses a JSON file. A missing file yields None; a corrupt one raises."""
    try:
        with filepath.open('r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        log.debug(f"File not found at {filepath}")
        return None
    except json.JSONDecodeError as e:
        log.error(f"Error decoding JSON from {filepath}: {e}")
        raise UpstreamError(f"Corrupt JSON in {filepath}: {e}", cause=e)
    except OSError as e:
        log.error(f"Error reading file {filepath}: {e}")
        raise UpstreamError(f"Cannot read {filepath}: {e}", cause=e)

def write_json(filepath: Path, data: Dict[str, Any]):
    """Writes data to a JSON file."""
    try:
        filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = filepath.with_suffix(filepath.suffix + ".tmp")
        with tmp_path.open('w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(filepath)
        log.debug(f"Successfully wrote JSON to {filepath}")
    except OSError as e:
        log.error(f"Error writing JSON to {filepath}: {e}")
        raise UpstreamError(f"Cannot write {filepath}: {e}", cause=e)

def read_file(filepath: Path) -> Optional[str]:
    """Reads content from a text file, or None if it is missing or unreadable."""
    try:
        return filepath.read_text(encoding='utf-8')
    except FileNotFoundError:
        log.warning(f"File not found: {filepath}")
        return None
    except (OSError, UnicodeDecodeError) as e:
        log.warning(f"Error reading file {filepath}: {e}")
        return None


# --- Task Utilities ---
def parse_task_ref(ref: Union[str, int]) -> Tuple[int, Optional[int]]:
    """Splits '7' or '7.2' into (task number, subtask number)."""
    ref_str = str(ref).strip()
    try:
        if '.' in ref_str:
            parent_str, sub_str = ref_str.split('.')
            return int(parent_str), int(sub_str)
        return int(ref_str), None
    except ValueError:
        raise ValidationError(f"Invalid task reference '{ref_str}'. Expected '<task>' or '<task>.<subtask>'.", task_id=ref_str)

def get_next_task_id(tasks: List[Any]) -> int:
    """Determines the next available task number."""
    if not tasks:
        return 1
    return max([t.id for t in tasks], default=0) + 1


# --- Text & String Utilities ---
def truncate(text: Optional[str], max_length: int) -> str:
    """Truncates text to a specified length."""
    if not text:
        return ""
    text = str(text) # Ensure it's a string
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."

def sanitize_filename(name: str) -> str:
    """Sanitizes a string to be used as a filename."""
    name = str(name) # Ensure string
    name = re.sub(r'[^\w\-_\. ]', '_', name) # Allow letters, numbers, underscore, hyphen, dot, space
    name = re.sub(r'\s+', '_', name) # Replace spaces with underscores
    name = name.strip('_')
    return name if name else "untitled" # Ensure not empty
