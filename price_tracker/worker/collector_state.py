"""Local collector identity persisted as JSON between runs."""

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "collector.json"
DEFAULT_STATE_DIR = Path.home() / ".price_tracker"


@dataclass
class CollectorState:
    """Identity and local status of this collector."""

    collector_id: str
    name: str
    status: str = "active"
    capabilities: dict[str, Any] = field(default_factory=dict)

    @property
    def is_paused(self) -> bool:
        return self.status in ("paused", "revoked")


def state_file_path(state_dir: str | Path | None = None) -> Path:
    base = Path(state_dir).expanduser() if state_dir else DEFAULT_STATE_DIR
    return base / STATE_FILE_NAME


def read_collector_state(path: Path) -> Optional[CollectorState]:
    """Load the state file. Missing or unreadable files yield None."""
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable collector state {path}: {e}")
        return None

    collector_id = str(data.get("collector_id") or "").strip()
    if not collector_id:
        return None
    return CollectorState(
        collector_id=collector_id,
        name=str(data.get("name") or collector_id),
        status=str(data.get("status") or "active"),
        capabilities=data.get("capabilities") or {},
    )


def write_collector_state(state: CollectorState, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(asdict(state), indent=2), encoding="utf-8")
    os.replace(tmp_path, path)
    return path


def clear_collector_state(path: Path) -> bool:
    """Delete the state file. Returns True if a file was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def load_or_create_collector_state(
    path: Path,
    name: str,
    capabilities: Optional[dict[str, Any]] = None,
) -> CollectorState:
    """Reuse the stored identity, or mint and persist a new one."""
    state = read_collector_state(path)
    if state is None:
        state = CollectorState(
            collector_id=str(uuid.uuid4()),
            name=name,
            capabilities=capabilities or {},
        )
        write_collector_state(state, path)
        logger.info(f"Registered new collector identity {state.collector_id} ({name})")
    elif capabilities is not None and capabilities != state.capabilities:
        state.capabilities = capabilities
        write_collector_state(state, path)
    return state
