"""
spotify/errors.py
Exceptions raised by the Spotify client.
"""

from __future__ import annotations
from typing import Any, Optional


class SpotifyError(Exception):
    """A Spotify Web API call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @classmethod
    def from_response(cls, status: int, body: Any) -> "SpotifyError":
        message = ""
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict):
                message = err.get("message", "")
            elif err:
                message = str(body.get("error_description") or err)
        if not message:
            message = "no details"
        error_cls = SpotifyNotFound if status == 404 else cls
        return error_cls(f"Spotify API error {status}: {message}", status=status)


class SpotifyAuthError(SpotifyError):
    """Credentials are missing or the token exchange was rejected."""


class SpotifyNotFound(SpotifyError):
    """Nothing matched: unknown link, empty search, missing device."""
