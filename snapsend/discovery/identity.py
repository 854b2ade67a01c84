"""
Identity Service for the device's stable identity and display name.
"""

import logging
import random
import uuid
from pathlib import Path

from snapsend.config import CONFIG_DIR, DEVICE_NAME

logger = logging.getLogger(__name__)

ADJECTIVES = [
    "Neon", "Cosmic", "Turbo", "Silent", "Electric", "Quantum",
    "Hidden", "Mystic", "Clever", "Swift", "Brave", "Pixel",
]

ANIMALS = [
    "Fox", "Panda", "Gopher", "Bear", "Snail", "Owl",
    "Wolf", "Tiger", "Hawk", "Dolphin", "Penguin", "Falcon",
]


def random_alias() -> str:
    return f"{random.choice(ADJECTIVES)} {random.choice(ANIMALS)}"


class IdentityService:
    """Loads or creates this installation's stable id and display name."""

    def __init__(self, config_dir: Path | str = CONFIG_DIR, default_name: str = DEVICE_NAME):
        self._config_dir = Path(config_dir)
        self._id_path = self._config_dir / "device-id"
        self._name_path = self._config_dir / "device-name"
        self._default_name = default_name or random_alias()
        self.stable_id = self.load_or_create_identity()
        self.display_name = self._load_name()
        logger.info(f"Initialized IdentityService: {self.display_name} ({self.stable_id})")

    def load_or_create_identity(self) -> str:
        """Return the persisted stable id, generating it on first run."""
        if self._id_path.exists():
            stable_id = self._id_path.read_text().strip()
            if stable_id:
                return stable_id
            logger.warning(f"Empty identity file at {self._id_path}, regenerating")

        stable_id = str(uuid.uuid4())
        self._config_dir.mkdir(parents=True, exist_ok=True)
        self._id_path.write_text(stable_id)
        return stable_id

    def _load_name(self) -> str:
        if self._name_path.exists():
            name = self._name_path.read_text().strip()
            if name:
                return name
        return self._default_name

    def rename(self, name: str) -> None:
        name = name.strip()
        if not name:
            raise ValueError("Device name cannot be empty")
        self.display_name = name
        self._config_dir.mkdir(parents=True, exist_ok=True)
        self._name_path.write_text(name)
