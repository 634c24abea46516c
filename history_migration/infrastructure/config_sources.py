"""
Configuration document sources.

Settings are assembled from flat, case-insensitive key/value maps whose keys
are colon-joined paths (``MtBackend:MarginTradingLive:Db:HistoryConnString``).
This module turns JSON documents into such maps, exposes them as settings
sources, and fetches the optional remote settings document.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

import aiohttp
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from history_migration.domain.errors import ConfigFormatError, ConfigurationError

KEY_DELIMITER = ":"
ENV_KEY_DELIMITER = "__"

FlatConfig = Dict[str, str]


def _reject_constant(token: str) -> Any:
    raise ConfigFormatError(f"Unsupported Json token: {token}")


def _unique_object(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    obj: Dict[str, Any] = {}
    seen: Dict[str, str] = {}
    for key, value in pairs:
        folded = key.lower()
        if folded in seen:
            raise ConfigFormatError(f"Key {key} is duplicated in the config")
        seen[folded] = key
        obj[key] = value
    return obj


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _visit(value: Any, path: List[str], out: FlatConfig) -> None:
    if isinstance(value, dict):
        for key, child in value.items():
            _visit(child, path + [key], out)
    elif isinstance(value, list):
        for index, child in enumerate(value):
            _visit(child, path + [str(index)], out)
    else:
        key = KEY_DELIMITER.join(path).lower()
        if key in out:
            raise ConfigFormatError(f"Key {KEY_DELIMITER.join(path)} is duplicated in the config")
        out[key] = _stringify(value)


def flatten_json_document(content: str) -> FlatConfig:
    """
    Parse a JSON settings document into a flat map of lowercased colon paths.

    Raises
    ------
    ConfigFormatError
        On duplicate keys (compared case-insensitively), non-standard tokens
        such as ``NaN``, malformed JSON, or a root that is not an object.
    """
    try:
        document = json.loads(
            content,
            object_pairs_hook=_unique_object,
            parse_constant=_reject_constant,
        )
    except json.JSONDecodeError as exc:
        raise ConfigFormatError(
            f"Malformed settings document: line {exc.lineno}, pos {exc.colno}: {exc.msg}"
        ) from exc
    if not isinstance(document, dict):
        raise ConfigFormatError(
            f"Settings document root must be an object, got {type(document).__name__}"
        )

    flat: FlatConfig = {}
    _visit(document, [], flat)
    return flat


def read_json_file(path: Path | str, optional: bool = True) -> FlatConfig:
    """Flatten a local JSON settings file; a missing optional file yields {}."""
    file_path = Path(path)
    if not file_path.exists():
        if optional:
            return {}
        raise ConfigurationError(f"Settings file not found: {file_path}")
    return flatten_json_document(file_path.read_text(encoding="utf-8"))


def document_key(field: FieldInfo, field_name: str) -> str:
    """Colon path of a field; aliases spell it with ``__`` so env variables match too."""
    alias = field.alias or field_name
    return alias.replace(ENV_KEY_DELIMITER, KEY_DELIMITER).lower()


class JsonDocumentSettingsSource(PydanticBaseSettingsSource):
    """
    Settings layer backed by a flattened JSON document.

    Values are emitted under the field alias, the same key the environment
    source uses, so layers override each other field by field. Empty values
    are skipped.
    """

    def __init__(self, settings_cls: Type[BaseSettings], document: FlatConfig) -> None:
        super().__init__(settings_cls)
        self.document = document

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        value = self.document.get(document_key(field, field_name))
        return value, field.alias or field_name, False

    def __call__(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            value, key, _ = self.get_field_value(field, field_name)
            if value:
                values[key] = value
        return values


async def fetch_remote_document(
    url: str,
    session: Optional[aiohttp.ClientSession] = None,
    timeout_seconds: float = 30.0,
) -> str:
    """
    Download the remote settings document.

    Raises
    ------
    ConfigurationError
        If the URL cannot be fetched or returns an empty body.
    """
    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout_seconds))
    try:
        async with session.get(url) as response:
            response.raise_for_status()
            body = await response.text()
    except aiohttp.ClientError as exc:
        raise ConfigurationError(f"Could not download config file from url: {url}") from exc
    finally:
        if owns_session:
            await session.close()

    if not body or not body.strip():
        raise ConfigurationError(f"Could not download config file from url: {url}")
    return body


__all__ = [
    "FlatConfig",
    "JsonDocumentSettingsSource",
    "document_key",
    "fetch_remote_document",
    "flatten_json_document",
    "read_json_file",
]
