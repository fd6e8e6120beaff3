"""FastAPI dependencies for the upstream collaborators (overridden in tests)."""
from shelfmate.services.upstream import BookMetadataSource, get_default_metadata_source


def get_metadata_source() -> BookMetadataSource:
    return get_default_metadata_source()
