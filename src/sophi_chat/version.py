"""Version of the installed sophi-chat distribution."""

from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION_NAME = "sophi-chat"


def get_version() -> str:
    """Return the installed version, or "dev" when running from an uninstalled checkout."""
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "dev"


__version__ = get_version()
