"""Remote catalog and thread metadata access."""

from threadkeeper.catalog.board import BoardApi, CatalogEntry, ChildImage, ThreadSnapshot
from threadkeeper.catalog.client import CatalogClient, fetch_with_retry
