"""Configuration management for the agent."""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional
import hashlib

from ruamel.yaml import YAML
from pydantic import ValidationError

from pveshape.models.config import PveshapeConfig
from pveshape.models.guest import GuestSpec, LxcSpec, VmSpec
from pveshape.utils.templates import merge_dicts


logger = logging.getLogger(__name__)

# Top-level sections of a declaration file and the records they hold
SECTIONS = {
    "vms": VmSpec,
    "containers": LxcSpec,
}


class ConfigManager:
    """Manages configuration loading and monitoring."""

    def __init__(self, config_dir: Path):
        """Initialize configuration manager."""
        self.config_dir = Path(config_dir)
        self.yaml = YAML()
        self.yaml.preserve_quotes = True
        self.config: Optional[PveshapeConfig] = None
        self.templates: Dict[str, Dict[str, Any]] = {}
        self.guests: Dict[str, GuestSpec] = {}
        self.load_errors: List[str] = []
        self._config_hashes: Dict[str, str] = {}

    async def load(self):
        """Load all configuration files."""
        logger.info(f"Loading configuration from {self.config_dir}")
        self.load_errors = []

        await self._load_main_config()
        await self._load_templates()
        await self._load_guests()

        if self.load_errors:
            logger.warning(f"Configuration loaded with {len(self.load_errors)} error(s)")
        else:
            logger.info("Configuration loaded successfully")

    async def _load_main_config(self):
        """Load main configuration file."""
        config_file = self.config_dir / "config.yaml"
        if not config_file.exists():
            raise FileNotFoundError(f"Main config not found: {config_file}")

        try:
            data = await self._read_yaml(config_file)
            self.config = PveshapeConfig(**(data or {}))
            logger.debug(f"Loaded main config: {config_file}")
        except ValidationError as e:
            logger.error(f"Invalid main config: {e}")
            raise

    async def _load_templates(self):
        """Load declaration templates."""
        templates_dir = self.config_dir / "templates"
        self.templates.clear()
        if not templates_dir.exists():
            logger.debug(f"Templates directory not found: {templates_dir}")
            return

        for yaml_file in sorted(templates_dir.glob("*.yaml")):
            try:
                data = await self._read_yaml(yaml_file) or {}
                self.templates.update(data)
                logger.debug(f"Loaded templates from {yaml_file}")
            except Exception as e:
                self._record_error(f"Error loading {yaml_file}: {e}")

    async def _load_guests(self):
        """Load guest declarations."""
        guests_dir = self.config_dir / "guests"
        self.guests.clear()
        if not guests_dir.exists():
            logger.warning(f"Guests directory not found: {guests_dir}")
            return

        for yaml_file in sorted(guests_dir.glob("*.yaml")):
            try:
                data = await self._read_yaml(yaml_file) or {}
            except Exception as e:
                self._record_error(f"Error loading {yaml_file}: {e}")
                continue

            for section, spec_class in SECTIONS.items():
                for key, declaration in (data.get(section) or {}).items():
                    if key in self.guests:
                        self._record_error(f"Duplicate guest declaration {key} in {yaml_file}")
                        continue
                    try:
                        self.guests[key] = spec_class(**self._resolve_template(key, declaration or {}))
                    except (ValidationError, KeyError) as e:
                        self._record_error(f"Invalid declaration {key} in {yaml_file}: {e}")
            logger.debug(f"Loaded guests from {yaml_file}")

    def _resolve_template(self, key: str, declaration: Dict[str, Any]) -> Dict[str, Any]:
        """Merge a declaration over the template it names."""
        declaration = dict(declaration)
        template_name = declaration.pop("template", None)
        if template_name is None:
            return declaration
        if template_name not in self.templates:
            raise KeyError(f"template {template_name!r} not found for {key}")
        return merge_dicts(self.templates[template_name], declaration)

    def _record_error(self, message: str):
        logger.error(message)
        self.load_errors.append(message)

    async def _read_yaml(self, file_path: Path) -> Dict[str, Any]:
        """Read and parse YAML file."""
        content = file_path.read_text()
        # Store hash for change detection
        self._config_hashes[str(file_path)] = hashlib.md5(content.encode()).hexdigest()
        return self.yaml.load(content)

    async def watch_for_changes(self) -> bool:
        """Check if configuration files have changed."""
        seen = set()
        for yaml_file in self.config_dir.rglob("*.yaml"):
            seen.add(str(yaml_file))
            current_hash = hashlib.md5(yaml_file.read_text().encode()).hexdigest()
            if self._config_hashes.get(str(yaml_file)) != current_hash:
                return True

        # A removed file is a change too
        return bool(set(self._config_hashes) - seen)

    def get_guest_spec(self, key: str) -> Optional[GuestSpec]:
        """Get guest declaration by key."""
        return self.guests.get(key)
