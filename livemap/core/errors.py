class MapDataError(RuntimeError):
    """Base for failures that abort a map refresh."""


class BackendError(MapDataError):
    """A backend query, upsert or subscription failed."""


class ResolutionError(MapDataError):
    """Friend or nearby resolution failed; the refresh is abandoned."""


class FetchError(MapDataError):
    """A bulk profile/location load failed; nothing from that batch was applied."""
