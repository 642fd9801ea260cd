"""Environment variable utilities.

Expands ``${VAR_NAME}`` references in store credentials and loads ``.env``
files. Only the braced form is recognised: credentials routinely contain
bare ``$`` characters.

Uses python-dotenv for .env file loading.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from dotenv import load_dotenv

from storesync.lib.errors import ConfigurationError

__all__ = ["expand_env_vars", "expand_fields", "load_env_file"]

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Args:
        path: Path to .env file. If None, searches for .env in the current
              directory and its parents.
        override: If True, override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = True, field: Optional[str] = None) -> str:
    """Replace every ``${VAR}`` in ``value`` with its environment value.

    Example:
        >>> os.environ["ACME_PASSWORD"] = "s3cret"
        >>> expand_env_vars("${ACME_PASSWORD}")
        's3cret'

    Raises:
        ConfigurationError: In strict mode, when a referenced variable is unset
    """

    def replacer(match: re.Match[str]) -> str:
        name = match.group(1)
        env_value = os.environ.get(name)
        if env_value is None:
            if strict:
                raise ConfigurationError(
                    f"Environment variable not set: {name}",
                    field=field,
                    suggestion=f"Export {name} or add it to your .env file",
                )
            return match.group(0)
        return env_value

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_fields(
    entry: Mapping[str, Any],
    fields: Iterable[str],
    *,
    strict: bool = True,
) -> Dict[str, Any]:
    """Return a copy of ``entry`` with env references expanded in ``fields``.

    Non-string values and fields not listed are copied unchanged.
    """
    result = dict(entry)
    for name in fields:
        value = result.get(name)
        if isinstance(value, str):
            result[name] = expand_env_vars(value, strict=strict, field=name)
    return result
