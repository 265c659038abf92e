"""Bundled and user-supplied preset workflow declarations."""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_PRESETS_DIR = Path(__file__).parent / "preset_files"


class PresetCatalog:
    """Preset declarations keyed by preset name.

    A preset is a YAML file mapping workflow keys to declarations. The catalog
    is built once at startup and handed to the config loader and dispatcher.
    """

    def __init__(self, presets: Optional[Dict[str, Dict[str, Any]]] = None):
        self.presets: Dict[str, Dict[str, Any]] = presets or {}

    @classmethod
    def load(cls, presets_dir: Optional[str] = None) -> "PresetCatalog":
        """Read every preset file from ``presets_dir`` (or the bundled set)."""
        directory = Path(presets_dir) if presets_dir else DEFAULT_PRESETS_DIR
        if presets_dir and not directory.is_dir():
            logger.warning(
                f"Presets directory not found at {directory}, using bundled presets"
            )
            directory = DEFAULT_PRESETS_DIR

        presets: Dict[str, Dict[str, Any]] = {}
        if not directory.is_dir():
            logger.warning(f"Presets directory not found at {directory}")
            return cls(presets)

        for preset_file in sorted(directory.iterdir()):
            if preset_file.suffix.lower() not in (".yaml", ".yml"):
                continue
            try:
                with open(preset_file, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                logger.error(f"Error loading preset file {preset_file}: {e}")
                continue
            if not isinstance(data, dict):
                logger.error(f"Preset config in {preset_file} must be a mapping")
                continue
            presets[preset_file.stem] = data

        logger.debug(f"Available presets: {', '.join(presets) or '(none)'}")
        return cls(presets)

    def available(self) -> List[str]:
        return sorted(self.presets)

    def declarations(self, names: Iterable[str]) -> Dict[str, Any]:
        """Merged declarations of the selected presets, later names winning."""
        merged: Dict[str, Any] = {}
        for name in names:
            preset = self.presets.get(name)
            if preset is None:
                raise ConfigurationError(
                    f"Preset '{name}' not found. Available presets: "
                    f"{', '.join(self.available()) or '(none)'}"
                )
            merged.update({key: dict(value or {}) for key, value in preset.items()})
        return merged

    def default_prompt(self, key: str) -> Optional[str]:
        """Prompt text a preset defines for workflow ``key``, if any."""
        for preset in self.presets.values():
            entry = preset.get(key)
            if isinstance(entry, dict) and entry.get("prompt"):
                return entry["prompt"]
        return None
