# yaml_parser.py
import json
from typing import Any

import structlog
import yaml

logger = structlog.get_logger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")
JSON_SUFFIXES = (".json",)


def load_yaml_file(filepath: str) -> dict[str, Any] | None:
    """
    Loads and parses a YAML (or JSON) run input file.

    Args:
        filepath: Path to a ``.yaml``, ``.yml`` or ``.json`` file.

    Returns:
        The mapping at the root of the file, ``{}`` for an empty file, or
        None if the file is missing, unparseable, or not a mapping.
    """
    if not filepath.endswith(YAML_SUFFIXES + JSON_SUFFIXES):
        logger.error(f"File specified is not a YAML or JSON file: {filepath}")
        return None
    try:
        with open(filepath, encoding="utf-8") as f:
            if filepath.endswith(JSON_SUFFIXES):
                content = json.load(f)
            else:
                content = yaml.safe_load(f)
    except FileNotFoundError:
        logger.warning(f"Input file '{filepath}' not found.")
        return None
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        logger.error(f"Error parsing input file {filepath}: {e}", exc_info=True)
        return None

    if content is None:  # Empty file
        return {}
    if not isinstance(content, dict):
        logger.error(
            f"Input file {filepath} must have a mapping as its root element. "
            f"Parsed type: {type(content).__name__}"
        )
        return None
    return content
