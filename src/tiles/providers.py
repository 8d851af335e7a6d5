"""Catalog of map tile providers.

Each provider describes where its tiles live (URL pattern and CDN shards),
how big they are and how they must be attributed. The catalog is an
immutable table built once on first use.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, field_validator

from shared.constants import TILE_SIZE, TILE_SIZE_512
from shared.errors import UnknownProviderError
from tiles.cache import validate_provider_name

OSM_ATTRIBUTION = 'Maps and Data (c) openstreetmap.org and contributors, ODbL'
THUNDERFOREST_ATTRIBUTION = 'Maps (c) Thundeforest; Data (c) OSM and contributors, ODbL'
STAMEN_ATTRIBUTION = 'Maps (c) Stamen; Data (c) OSM and contributors, ODbL'
CARTO_ATTRIBUTION = 'Map (c) Carto [CC BY 3.0] Data (c) OSM and contributors, ODbL.'


class TileProvider(BaseModel):
    """Tile service description.

    ``url_pattern`` uses the placeholders ``{s}`` (shard), ``{z}`` (zoom),
    ``{x}`` and ``{y}``. Tiles are cached under ``{cache_dir}/{name}``.
    """

    model_config = {'frozen': True}

    name: str
    attribution: str
    url_pattern: str
    tile_size: int = TILE_SIZE
    shards: tuple[str, ...] = ()
    # Treat upstream 404 as an empty tile instead of an error
    ignore_not_found: bool = False

    @field_validator('name')
    @classmethod
    def _check_name(cls, v: str) -> str:
        return validate_provider_name(v)

    @field_validator('tile_size')
    @classmethod
    def _check_tile_size(cls, v: int) -> int:
        if v <= 0:
            msg = f'tile_size must be positive, got {v}'
            raise ValueError(msg)
        return v

    def url_for(self, shard: str, zoom: int, x: int, y: int) -> str:
        return self.url_pattern.format(s=shard, z=zoom, x=x, y=y)

    def shard_for(self, x: int, y: int) -> str:
        """Pick a shard for a tile; the same tile always maps to the same host."""
        if not self.shards:
            return ''
        return self.shards[(x + y) % len(self.shards)]

    def tile_url(self, zoom: int, x: int, y: int) -> str:
        return self.url_for(self.shard_for(x, y), zoom, x, y)


def openstreetmap() -> TileProvider:
    return TileProvider(
        name='osm',
        attribution=OSM_ATTRIBUTION,
        url_pattern='http://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png',
        shards=('a', 'b', 'c'),
    )


def here_provider(
    map_id: str,
    scheme: str,
    ppi: int,
    app_id: str,
    app_code: str,
) -> TileProvider:
    """HERE map tile service.

    Use ppi=72 for normal size or ppi=320 for retina output at 2x.
    With map_id='newest' the cache must be cleared periodically, otherwise
    older cached tiles get mixed with newly fetched ones.
    """
    return TileProvider(
        name='here',
        attribution='here.com',
        tile_size=TILE_SIZE_512,
        url_pattern=(
            'https://{s}.base.maps.cit.api.here.com/maptile/2.1/maptile/'
            f'{map_id}/{scheme}/{{z}}/{{x}}/{{y}}/512/png'
            f'?ppi={ppi}&app_id={app_id}&app_code={app_code}'
        ),
        shards=('1', '2', '3', '4'),
    )


def _thunderforest(style: str) -> TileProvider:
    return TileProvider(
        name=f'thunderforest-{style}',
        attribution=THUNDERFOREST_ATTRIBUTION,
        url_pattern=f'https://{{s}}.tile.thunderforest.com/{style}/{{z}}/{{x}}/{{y}}.png',
        shards=('a', 'b', 'c'),
    )


def thunderforest_landscape() -> TileProvider:
    return _thunderforest('landscape')


def thunderforest_outdoors() -> TileProvider:
    return _thunderforest('outdoors')


def thunderforest_transport() -> TileProvider:
    return _thunderforest('transport')


def _stamen(style: str) -> TileProvider:
    return TileProvider(
        name=f'stamen-{style}',
        attribution=STAMEN_ATTRIBUTION,
        url_pattern=f'http://{{s}}.tile.stamen.com/{style}/{{z}}/{{x}}/{{y}}.png',
        shards=('a', 'b', 'c', 'd'),
    )


def stamen_toner() -> TileProvider:
    return _stamen('toner')


def stamen_terrain() -> TileProvider:
    return _stamen('terrain')


def opentopomap() -> TileProvider:
    return TileProvider(
        name='opentopomap',
        attribution=(
            'Maps (c) OpenTopoMap [CC-BY-SA]; Data (c) OSM and contributors [ODbL]; '
            'Data (c) SRTM'
        ),
        url_pattern='http://{s}.tile.opentopomap.org/{z}/{x}/{y}.png',
        shards=('a', 'b', 'c'),
    )


def wikimedia() -> TileProvider:
    return TileProvider(
        name='wikimedia',
        attribution='Map (c) Wikimedia; Data (c) OSM and contributors, ODbL.',
        url_pattern='https://maps.wikimedia.org/osm-intl/{z}/{x}/{y}.png',
    )


def opencyclemap() -> TileProvider:
    return TileProvider(
        name='cycle',
        attribution='Maps and Data (c) openstreetmaps.org and contributors, ODbL',
        url_pattern='http://{s}.tile.opencyclemap.org/cycle/{z}/{x}/{y}.png',
        shards=('a', 'b'),
    )


def _carto(variant: str) -> TileProvider:
    return TileProvider(
        name=f'carto-{variant}',
        attribution=CARTO_ATTRIBUTION,
        url_pattern=(
            'https://cartodb-basemaps-{s}.global.ssl.fastly.net/'
            f'{variant}_all/{{z}}/{{x}}/{{y}}.png'
        ),
        shards=('a', 'b', 'c', 'd'),
    )


def carto_light() -> TileProvider:
    return _carto('light')


def carto_dark() -> TileProvider:
    return _carto('dark')


def arcgis_world_imagery() -> TileProvider:
    # ArcGIS orders the path as zoom/row/column
    return TileProvider(
        name='arcgis-worldimagery',
        attribution=(
            'Source: Esri, Maxar, GeoEye, Earthstar Geographics, CNES/Airbus DS, '
            'USDA, USGS, AeroGRID, IGN, and the GIS User Community'
        ),
        url_pattern=(
            'https://server.arcgisonline.com/arcgis/rest/services/'
            'World_Imagery/MapServer/tile/{z}/{y}/{x}'
        ),
    )


@lru_cache(maxsize=1)
def all_providers() -> tuple[TileProvider, ...]:
    """All built-in providers in display order. Built once, never mutated."""
    return (
        openstreetmap(),
        opencyclemap(),
        thunderforest_landscape(),
        thunderforest_outdoors(),
        thunderforest_transport(),
        stamen_toner(),
        stamen_terrain(),
        opentopomap(),
        wikimedia(),
        carto_light(),
        carto_dark(),
        arcgis_world_imagery(),
    )


def provider_names() -> list[str]:
    return [p.name for p in all_providers()]


def get_provider(name: str) -> TileProvider:
    """Look up a built-in provider by name.

    Raises:
        UnknownProviderError: No provider with this name.
    """
    for provider in all_providers():
        if provider.name == name:
            return provider
    msg = f'Unknown tile provider {name!r}; available: {", ".join(provider_names())}'
    raise UnknownProviderError(msg)
