"""OAuth redirect callback parsing.

Web targets receive the provider's token pair in the URL fragment:
``https://app.example/#access_token=...&refresh_token=...&expires_in=3600``.
"""
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import parse_qs, urldefrag

from ..exceptions import ParseError


@dataclass(frozen=True)
class OAuthCallback:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


def parse_callback_fragment(url: str) -> Optional[OAuthCallback]:
    """Extract OAuth callback parameters from a URL fragment.

    Returns:
        The callback, or None if the URL carries no callback at all

    Raises:
        ParseError: If the fragment looks like a callback but is malformed
    """
    _, fragment = urldefrag(url)
    if not fragment:
        return None

    try:
        params = parse_qs(fragment, keep_blank_values=True, strict_parsing=True)
    except ValueError as e:
        if "access_token" in fragment or "error" in fragment:
            raise ParseError(f"Malformed OAuth callback fragment: {e}") from e
        return None

    def single(name: str) -> Optional[str]:
        values = params.get(name)
        if not values:
            return None
        if len(values) > 1:
            raise ParseError(f"Duplicate {name} in OAuth callback")
        return values[0]

    error = single("error")
    if error:
        return OAuthCallback(error=error, error_description=single("error_description"))

    access_token = single("access_token")
    refresh_token = single("refresh_token")
    if access_token is None and refresh_token is None:
        return None
    if not access_token or not refresh_token:
        raise ParseError("OAuth callback is missing the access or refresh token")

    expires_in = single("expires_in")
    if expires_in is not None:
        try:
            expires_in = int(expires_in)
        except ValueError:
            raise ParseError(f"Invalid expires_in in OAuth callback: {expires_in!r}")

    return OAuthCallback(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in)


def strip_fragment(url: str) -> str:
    """URL with its fragment removed."""
    return urldefrag(url)[0]


class UrlLocation(Protocol):
    """The externally visible URL of a web target."""

    def current_url(self) -> Optional[str]: ...

    def replace_url(self, url: str) -> None: ...


class BrowserLocation:
    """Visible URL reported by the web client.

    The client posts its URL on load and applies the replacement it gets
    back with ``history.replaceState``.
    """

    def __init__(self, url: Optional[str] = None):
        self._url = url

    def current_url(self) -> Optional[str]:
        return self._url

    def replace_url(self, url: str) -> None:
        self._url = url
