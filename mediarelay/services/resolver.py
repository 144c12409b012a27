"""Format Resolver interface.

A resolver turns a backend-specific target (a video id, a search query) into
the list of downloadable format candidates. Scraping and extraction details
stay behind this interface so backends can be swapped without touching
selection, fallback or caching.
"""

from abc import ABC, abstractmethod

from mediarelay.models.media import ResolvedMedia


class FormatResolver(ABC):
    """Resolves a target into format candidates from one backend."""

    name: str = "resolver"

    @abstractmethod
    async def resolve(self, target: str) -> ResolvedMedia:
        """
        Return the title and every known candidate for the target.

        Raises:
            NoFormatsFoundError: backend answered but offered nothing usable
            BackendUnavailableError: backend could not be reached
            SourceUnavailableError: backend reports the media as gone
        """
