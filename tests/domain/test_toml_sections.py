"""Tests for TOML sectioned settings mapping layer."""

import tomlkit

from domain.models import FetchSettings
from domain.toml_sections import (
    SECTION_MAP,
    flat_to_sectioned,
    sectioned_to_flat,
)


class TestFlatToSectioned:
    """Tests for flat_to_sectioned()."""

    def test_creates_expected_sections(self):
        result = flat_to_sectioned(FetchSettings(cache_dir='/tmp/x').model_dump(mode='json'))
        assert set(result) == {'cache', 'http'}

    def test_short_names(self):
        result = flat_to_sectioned(FetchSettings(cache_dir='/tmp/x').model_dump(mode='json'))
        assert result['cache']['dir'] == '/tmp/x'
        assert result['cache']['store_mode'] == 'overwrite'
        assert 'cache_dir' not in result['cache']
        assert result['http']['offline'] is False

    def test_none_dropped(self):
        result = flat_to_sectioned(FetchSettings().model_dump(mode='json'))
        assert 'dir' not in result['cache']

    def test_unknown_field_goes_to_common(self):
        result = flat_to_sectioned({'extra': 1})
        assert result == {'common': {'extra': 1}}

    def test_every_field_is_mapped(self):
        mapped = {flat for fields in SECTION_MAP.values() for flat in fields}
        assert mapped == set(FetchSettings.model_fields)


class TestSectionedToFlat:
    """Tests for sectioned_to_flat()."""

    def test_expands_short_names(self):
        flat = sectioned_to_flat({'cache': {'dir': '/c', 'dir_mode': 448}, 'http': {'retries': 2}})
        assert flat == {'cache_dir': '/c', 'dir_mode': 448, 'retries': 2}

    def test_flat_keys_pass_through(self):
        assert sectioned_to_flat({'retries': 5}) == {'retries': 5}

    def test_unknown_table_passes_through(self):
        assert sectioned_to_flat({'common': {'retries': 2}}) == {'retries': 2}

    def test_reverses_flat_to_sectioned(self):
        flat = FetchSettings(cache_dir='/c', offline=True).model_dump(mode='json')
        assert sectioned_to_flat(flat_to_sectioned(flat)) == flat

    def test_toml_document(self):
        text = '[cache]\ndir = "/srv/tiles"\nstore_mode = "exclusive"\n\n[http]\nconcurrency = 3\n'
        flat = sectioned_to_flat(tomlkit.parse(text).unwrap())
        s = FetchSettings.model_validate(flat)
        assert s.cache_dir == '/srv/tiles'
        assert s.exclusive is True
        assert s.concurrency == 3
