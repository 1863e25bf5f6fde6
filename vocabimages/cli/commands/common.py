"""Helpers shared by CLI commands."""

from dataclasses import replace
from pathlib import Path

from vocabimages.config import Settings


def load_settings(args) -> Settings:
    """Settings from the environment, with CLI overrides applied."""
    settings = Settings.from_env()
    if getattr(args, "data_dir", None):
        settings = replace(settings, data_dir=Path(args.data_dir))
    return settings
