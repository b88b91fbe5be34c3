"""Spotify package __init__.py"""
from .client import SpotifyClient, format_track, parse_spotify_url
from .errors import SpotifyAuthError, SpotifyError, SpotifyNotFound

__all__ = [
    "SpotifyClient", "format_track", "parse_spotify_url",
    "SpotifyError", "SpotifyAuthError", "SpotifyNotFound",
]
