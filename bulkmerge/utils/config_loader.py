import os
import re
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from bulkmerge.config import MergeConfig
from bulkmerge.exceptions import ConfigValidationError
from bulkmerge.sql.predicates import PredicateKind
from bulkmerge.utils.logging import logger

# ${VAR} or ${env:VAR}
ENV_PATTERN = re.compile(r"\$\{(?:env:)?([A-Za-z0-9_]+)\}")

# Substituted values containing these can change how the YAML parses
YAML_SENSITIVE = ("\n", "\r", ":", "#")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``base`` updated with ``override``; nested mappings merge, anything else is replaced."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = _deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _substitute_env(content: str, path: str) -> str:
    def lookup(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in os.environ:
            logger.error("Missing required environment variable", variable=name, file=path)
            raise ValueError(f"Missing environment variable: {name}")
        value = os.environ[name]
        if any(char in value for char in YAML_SENSITIVE):
            logger.warning("Environment variable contains YAML-sensitive characters", variable=name)
        return value

    return ENV_PATTERN.sub(lookup, content)


def load_yaml_with_env(path: str, env: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML file with environment variable substitution and imports.

    Supports:
    - ${VAR_NAME} substitution
    - 'imports' list of relative paths, merged under the importing file
    - 'environments' overrides based on env param

    Args:
        path: Path to YAML file
        env: Environment name (e.g., 'prod', 'dev') to apply overrides

    Returns:
        Parsed dictionary (merged with imports and env overrides)

    Raises:
        FileNotFoundError: If file does not exist
        ValueError: If environment variable is missing
        yaml.YAMLError: If YAML parsing fails
    """
    logger.debug("Loading YAML configuration", path=path, env=env)

    if not os.path.exists(path):
        logger.error("Configuration file not found", path=path)
        raise FileNotFoundError(f"YAML file not found: {path}")

    abs_path = os.path.abspath(path)
    base_dir = os.path.dirname(abs_path)

    with open(abs_path, "r", encoding="utf-8") as f:
        content = f.read()

    try:
        data = yaml.safe_load(_substitute_env(content, abs_path)) or {}
    except yaml.YAMLError as e:
        logger.error("YAML parsing failed", path=abs_path, error=str(e))
        raise

    imports = data.pop("imports", [])
    if isinstance(imports, str):
        imports = [imports]

    for import_path in imports:
        full_import_path = import_path if os.path.isabs(import_path) else os.path.join(base_dir, import_path)
        if not os.path.exists(full_import_path):
            logger.error(
                "Imported configuration file not found",
                import_path=import_path,
                parent_file=abs_path,
            )
            raise FileNotFoundError(f"Imported YAML file not found: {full_import_path}")

        imported_data = load_yaml_with_env(full_import_path, env=env)
        # The importing file wins over what it imports
        data = _deep_merge(imported_data, data)

    if env:
        environments = data.get("environments", {})
        if env in environments:
            logger.debug(
                "Applying environment overrides",
                env=env,
                override_keys=list(environments[env].keys()),
            )
            data = _deep_merge(data, environments[env])
        else:
            logger.debug(
                "No environment override found",
                env=env,
                available_environments=list(environments.keys()),
            )

    data.pop("environments", None)
    logger.debug("Configuration loading complete", path=path, env=env, final_keys=list(data.keys()))
    return data


def _conditions(block: Dict[str, Any]) -> List[Dict[str, Any]]:
    conditions = list(block.pop("conditions", []) or [])
    for key, kind in (("update_when", PredicateKind.UPDATE), ("delete_when", PredicateKind.DELETE)):
        for predicate in block.pop(key, []) or []:
            conditions.append({**predicate, "kind": kind})
    return conditions


def merge_config_from_dict(block: Dict[str, Any]) -> MergeConfig:
    """
    Build a ``MergeConfig`` from a mapping.

    Accepts the model's own field names plus two shorthands:
    ``update_when``/``delete_when`` lists of ``{column, operator, value}``
    predicates, and an ``identity`` block with ``column`` and ``direction``.

    Raises:
        ConfigValidationError: If the mapping doesn't describe a valid merge
    """
    block = dict(block)
    block["conditions"] = _conditions(block)

    identity = block.pop("identity", None)
    if isinstance(identity, dict):
        block["identity_column"] = identity.get("column")
        block["identity_direction"] = identity.get("direction", "input")
    elif identity:
        block["identity_column"] = identity

    try:
        return MergeConfig.model_validate(block)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ConfigValidationError(first.get("msg", str(e)), field=field) from e


def load_merge_config(path: str, env: Optional[str] = None, key: str = "merge") -> MergeConfig:
    """Load a ``MergeConfig`` from the ``key`` block of a YAML file (or the whole file)."""
    data = load_yaml_with_env(path, env=env)
    block = data.get(key, data)
    if not isinstance(block, dict):
        raise ConfigValidationError(f"Expected a mapping under '{key}'", field=key)
    config = merge_config_from_dict(block)
    logger.info("Loaded merge configuration", path=path, table=config.table, columns=len(config.columns))
    return config
