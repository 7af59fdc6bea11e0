import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import dotenv_values, set_key
from pydantic import ValidationError

from lib.errors import ConfigError
from lib.models import SwitchConfig

logger = logging.getLogger(__name__)

CONFIG_FILE = "edgeswitch.yml"
ENV_PREFIX = "EDGESWITCH_"
LIST_FIELDS = {"required_env_keys"}


def config_path(path: Optional[str] = None) -> Path:
    """Config file location: explicit path, EDGESWITCH_CONFIG, or ./edgeswitch.yml"""
    return Path(path or os.getenv(f"{ENV_PREFIX}CONFIG", CONFIG_FILE))


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read the yaml settings file; a missing file means all settings come from the environment"""
    if not path.exists():
        logger.debug(f"{path} not found, using environment and defaults")
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping of settings")
    return data


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """EDGESWITCH_<FIELD> variables as settings (pydantic does the type coercion)"""
    overrides: Dict[str, Any] = {}
    for name in SwitchConfig.model_fields:
        key = f"{ENV_PREFIX}{name.upper()}"
        if key not in environ:
            continue
        value: Any = environ[key]
        if name in LIST_FIELDS:
            value = [v.strip() for v in value.split(",") if v.strip()]
        overrides[name] = value
    return overrides


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SwitchConfig:
    """Build the settings: yaml file, then environment, then explicit overrides (CLI)

    Raises:
        ConfigError: when the merged settings do not validate
    """
    file = config_path(path)
    data = load_config_file(file)
    data.update(env_overrides(os.environ if environ is None else environ))
    data.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        return SwitchConfig(**data)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors())
        raise ConfigError(
            f"Invalid settings ({file}): {problems}",
            diagnostics=[f"cat '{file}'", f"env | grep ^{ENV_PREFIX}"],
        ) from e


def merge_external_env(
    target: Path,
    external: Path,
    required_keys: Optional[List[str]] = None,
    loopback_alias: Optional[str] = None,
) -> Dict[str, Optional[str]]:
    """Merge an external env file (kept outside the repo) into the project's .env.

    External values win. When ``loopback_alias`` is set, localhost and
    127.0.0.1 hosts in DATABASE_URL are rewritten to it, since the slots reach
    the host database from inside their containers.

    Returns:
        The merged values
    """
    if not external.is_file():
        raise ConfigError(f"External env not found: {external}", diagnostics=[f"ls -l '{external.parent}'"])

    merged: Dict[str, Optional[str]] = dict(dotenv_values(target)) if target.exists() else {}
    merged.update(dotenv_values(external))

    db_url = merged.get("DATABASE_URL")
    if loopback_alias and db_url:
        merged["DATABASE_URL"] = re.sub(r"@(localhost|127\.0\.0\.1):", f"@{loopback_alias}:", db_url)

    for key in required_keys or []:
        if not merged.get(key):
            raise ConfigError(
                f"{key} is missing or empty after merging {external} into {target}",
                diagnostics=[f"grep '^{key}=' '{external}' '{target}'"],
            )

    # quoted, so values with spaces, " #", quotes or newlines read back unchanged
    target.write_text("", encoding="utf-8")
    for key, value in merged.items():
        set_key(target, key, "" if value is None else value, quote_mode="always")
    logger.info(f"Merged external env into {target} from {external}")
    return merged
