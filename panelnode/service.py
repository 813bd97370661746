"""The interface every service run by the panel implements."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Service(ABC):
    """A service that can be started and closed, and so restarted."""

    @abstractmethod
    def start(self) -> None:
        """Start the service."""

    @abstractmethod
    def close(self) -> None:
        """Stop the service."""

    def __enter__(self) -> Service:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()