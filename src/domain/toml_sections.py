"""Mapping layer between flat FetchSettings fields and sectioned TOML format.

FetchSettings remains a flat Pydantic model. This module provides two functions:
- flat_to_sectioned(): flat dict → sectioned dict (for TOML save)
- sectioned_to_flat(): sectioned dict → flat dict (for TOML load)
"""

from __future__ import annotations

# {section_name: {flat_field_name: short_name_in_toml}}
SECTION_MAP: dict[str, dict[str, str]] = {
    'cache': {
        'cache_dir': 'dir',
        'dir_mode': 'dir_mode',
        'store_mode': 'store_mode',
    },
    'http': {
        'concurrency': 'concurrency',
        'timeout': 'timeout',
        'retries': 'retries',
        'backoff': 'backoff',
        'user_agent': 'user_agent',
        'offline': 'offline',
    },
}


def _build_indexes() -> tuple[dict[str, tuple[str, str]], dict[str, dict[str, str]]]:
    by_field: dict[str, tuple[str, str]] = {}
    by_section: dict[str, dict[str, str]] = {}
    for section, fields in SECTION_MAP.items():
        for field_name, toml_name in fields.items():
            by_field[field_name] = (section, toml_name)
            by_section.setdefault(section, {})[toml_name] = field_name
    return by_field, by_section


# field -> (section, toml key) and section -> {toml key: field}
_FIELD_INDEX, _SECTION_INDEX = _build_indexes()


def flat_to_sectioned(flat: dict) -> dict:
    """Convert flat FetchSettings dict to sectioned dict for TOML output.

    None values are dropped, TOML has no null.
    """
    result: dict = {}
    for key, value in flat.items():
        if value is None:
            continue
        section, short_name = _FIELD_INDEX.get(key, ('common', key))
        result.setdefault(section, {})[short_name] = value
    return result


def sectioned_to_flat(data: dict) -> dict:
    """Convert sectioned TOML dict to flat dict for FetchSettings validation.

    Keys of unknown tables and top-level keys are taken as field names.
    """
    flat: dict = {}
    for name, value in data.items():
        if not isinstance(value, dict):
            flat[name] = value
            continue
        fields = _SECTION_INDEX.get(name, {})
        flat.update({fields.get(k, k): v for k, v in value.items()})
    return flat
