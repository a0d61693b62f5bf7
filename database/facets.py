"""
Rich-text facet extraction for the facet_index table.

A record body may carry `facets`, each with a list of `features`:

    {"facets": [{"index": {...}, "features": [
        {"$type": "app.bsky.richtext.facet#mention", "did": "did:plc:abc"},
        {"$type": "app.bsky.richtext.facet#tag", "tag": "Python"}
    ]}]}

Each recognised feature becomes one (type, value) entry.
"""

from dataclasses import dataclass
from typing import Any, Dict, List


MENTION_TYPE = 'app.bsky.richtext.facet#mention'
TAG_TYPE = 'app.bsky.richtext.facet#tag'
LINK_TYPE = 'app.bsky.richtext.facet#link'


@dataclass(frozen=True)
class FacetEntry:
    """One facet_index row."""
    uri: str
    type: str
    value: str


def normalize_facet_value(facet_type: str, value: str) -> str:
    """Tags are case-insensitive; everything else is kept verbatim."""
    return value.lower() if facet_type == 'tag' else value


def _feature_entry(uri: str, feature: Dict[str, Any]):
    feature_type = feature.get('$type')
    if feature_type == MENTION_TYPE and isinstance(feature.get('did'), str):
        return FacetEntry(uri, 'mention', feature['did'])
    if feature_type == TAG_TYPE and isinstance(feature.get('tag'), str):
        return FacetEntry(uri, 'tag', normalize_facet_value('tag', feature['tag']))
    if feature_type == LINK_TYPE and isinstance(feature.get('uri'), str):
        return FacetEntry(uri, 'link', feature['uri'])
    return None


def index_facets(uri: str, facets: Any) -> List[FacetEntry]:
    """
    Extract facet index entries from a record's `facets` value.

    Args:
        uri: Owning record URI
        facets: The body's `facets` value (anything; non-lists yield nothing)

    Returns:
        De-duplicated entries in first-seen order
    """
    if not isinstance(facets, list):
        return []

    entries: List[FacetEntry] = []
    seen = set()
    for facet in facets:
        if not isinstance(facet, dict):
            continue
        features = facet.get('features')
        if not isinstance(features, list):
            continue
        for feature in features:
            if not isinstance(feature, dict):
                continue
            entry = _feature_entry(uri, feature)
            if entry is not None and entry not in seen:
                seen.add(entry)
                entries.append(entry)

    return entries
