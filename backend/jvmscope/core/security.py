"""
Discovery plugin token issuing and validation.

Tokens are nested JOSE objects: an HS256-signed JWT claim set wrapped in a
``dir`` / ``A256GCM`` encrypted JWE envelope.  Signing and encryption use
separate keys, both expanded with HKDF-SHA256 from one master key.  The
plugin treats the token as opaque and presents it on every privileged
request (publish, deregister, registration refresh).

Claims:
    iss       -- the engine's public base URL.
    aud       -- ``[issuer, caller address]``.
    iat / nbf -- issue time.
    exp       -- issue time plus twice the plugin ping period.
    sub       -- the plugin id.
    resource  -- absolute URL of the plugin's resource path.
    realm     -- the plugin's realm name.

Provides:
- ``DiscoveryTokenFactory`` -- issues and validates plugin tokens.
- ``parse_bearer_token``     -- extracts a token from an ``Authorization`` header.
"""

from __future__ import annotations

import hashlib
import os
import time
from typing import Any, Optional
from urllib.parse import urljoin, urlsplit

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from jose import jwe, jwt
from jose.exceptions import JOSEError

from jvmscope.config import Settings, get_settings
from jvmscope.core.exceptions import AuthorizationError
from jvmscope.core.logging import get_logger

logger = get_logger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

_SIGNING_ALGORITHM: str = "HS256"
_KEY_ALGORITHM: str = "dir"
_CONTENT_ENCRYPTION: str = "A256GCM"
_KEY_LENGTH_BYTES: int = 32
_SIGNING_KEY_INFO: bytes = b"jvmscope plugin token signing"
_ENCRYPTION_KEY_INFO: bytes = b"jvmscope plugin token encryption"

RESOURCE_CLAIM: str = "resource"
REALM_CLAIM: str = "realm"

_BEARER_PREFIX: str = "bearer "


# ── Helpers ──────────────────────────────────────────────────────────────────

def derive_key(secret: Optional[str]) -> bytes:
    """Derive the 256-bit token key from *secret*.

    When no secret is configured a random key is returned, meaning tokens
    issued by this process cannot be validated after a restart.
    """
    if not secret:
        return os.urandom(_KEY_LENGTH_BYTES)
    return hashlib.sha256(secret.encode("utf-8")).digest()


def expand_key(master: bytes, info: bytes) -> bytes:
    """Derive a 256-bit subkey of *master* for the purpose named by *info*."""
    return HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_LENGTH_BYTES,
        salt=None,
        info=info,
    ).derive(master)


def parse_bearer_token(header: Optional[str]) -> Optional[str]:
    """Return the token of an ``Authorization: Bearer <token>`` header, if any."""
    if not header:
        return None
    if not header.lower().startswith(_BEARER_PREFIX):
        return None
    token = header[len(_BEARER_PREFIX):].strip()
    return token or None


def _path_of(resource: str) -> str:
    return urlsplit(resource).path or "/"


# ── Factory ──────────────────────────────────────────────────────────────────

class DiscoveryTokenFactory:
    """Issues and validates discovery plugin tokens.

    Args:
        settings: Application settings.  Defaults to :func:`get_settings`.
        key: Raw 32 byte master key.  Defaults to a key derived from
            ``PLUGIN_TOKEN_SECRET``.  The signing and encryption keys are
            expanded from it.
        clock: Callable returning the current UNIX time, for tests.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        key: Optional[bytes] = None,
        clock=time.time,
    ) -> None:
        self._settings = settings or get_settings()
        master = key or derive_key(self._settings.PLUGIN_TOKEN_SECRET)
        if len(master) != _KEY_LENGTH_BYTES:
            raise ValueError(f"Token key must be {_KEY_LENGTH_BYTES} bytes long.")
        self._signing_key: bytes = expand_key(master, _SIGNING_KEY_INFO)
        self._encryption_key: bytes = expand_key(master, _ENCRYPTION_KEY_INFO)
        self._clock = clock

    @property
    def issuer(self) -> str:
        return self._settings.PUBLIC_BASE_URL.rstrip("/")

    @property
    def lifetime_seconds(self) -> int:
        return int(2 * self._settings.PLUGIN_PING_PERIOD_SECONDS)

    def resource_url(self, path: str) -> str:
        """Return the absolute form of *path* under the public base URL."""
        return urljoin(self.issuer + "/", path.lstrip("/"))

    # -- Issuing ---------------------------------------------------------------

    def create_token(
        self,
        plugin_id: str,
        realm: str,
        resource_path: str,
        request_address: Optional[str] = None,
    ) -> str:
        """Issue a token for *plugin_id* authorising access to *resource_path*.

        Args:
            plugin_id: The plugin id, used as the token subject.
            realm: The plugin's realm name.
            resource_path: The request path the token authorises, for example
                ``/api/v1/discovery/<id>``.
            request_address: Resolved network address of the registering
                caller.  Added to the audience when known.

        Returns:
            The compact serialised encrypted token.
        """
        now = int(self._clock())
        audience: list[str] = [self.issuer]
        if request_address:
            audience.append(request_address)

        claims: dict[str, Any] = {
            "iss": self.issuer,
            "aud": audience,
            "iat": now,
            "nbf": now,
            "exp": now + self.lifetime_seconds,
            "sub": str(plugin_id),
            RESOURCE_CLAIM: self.resource_url(resource_path),
            REALM_CLAIM: realm,
        }
        signed: str = jwt.encode(claims, self._signing_key, algorithm=_SIGNING_ALGORITHM)
        encrypted = jwe.encrypt(
            signed.encode("utf-8"),
            self._encryption_key,
            algorithm=_KEY_ALGORITHM,
            encryption=_CONTENT_ENCRYPTION,
        )
        return encrypted.decode("utf-8") if isinstance(encrypted, bytes) else encrypted

    # -- Validation ------------------------------------------------------------

    def validate_token(
        self,
        token: Optional[str],
        plugin_id: str,
        realm: str,
        request_path: str,
        request_address: Optional[str] = None,
        check_time_claims: bool = True,
    ) -> dict[str, Any]:
        """Decrypt and verify *token* for the given request.

        Args:
            token: The encrypted token presented by the caller.
            plugin_id: The id of the plugin addressed by the request.
            realm: The realm name stored for that plugin.
            request_path: Path of the incoming request.  The token's
                resource claim must match it, either as an absolute URL
                under the public base URL or as a bare path.
            request_address: Resolved address of the caller.  When given it
                must be one of the token's audiences.
            check_time_claims: Verify ``exp`` and ``nbf`` (with clock skew
                tolerance).  Disabled when a plugin refreshes its
                registration with an expired token.

        Returns:
            The verified claim set.

        Raises:
            AuthorizationError: On any decryption, signature, or claim failure.
        """
        if not token:
            raise AuthorizationError("Missing discovery plugin token.")

        try:
            signed = jwe.decrypt(token, self._encryption_key)
            if signed is None:
                raise AuthorizationError("Token could not be decrypted.")
            claims: dict[str, Any] = jwt.decode(
                signed.decode("utf-8") if isinstance(signed, bytes) else signed,
                self._signing_key,
                algorithms=[_SIGNING_ALGORITHM],
                audience=self.issuer,
                issuer=self.issuer,
                subject=str(plugin_id),
                options={
                    "verify_exp": check_time_claims,
                    "verify_nbf": check_time_claims,
                    "verify_iat": check_time_claims,
                    "leeway": self._settings.PLUGIN_TOKEN_CLOCK_SKEW_SECONDS,
                },
            )
        except AuthorizationError:
            raise
        except (JOSEError, ValueError, UnicodeDecodeError) as exc:
            raise AuthorizationError(f"Invalid discovery plugin token: {exc}") from exc

        if claims.get(REALM_CLAIM) != realm:
            raise AuthorizationError("Token realm does not match the plugin realm.")

        if request_address is not None:
            audience = claims.get("aud")
            audiences = audience if isinstance(audience, list) else [audience]
            if request_address not in audiences:
                raise AuthorizationError("Token was not issued to this address.")

        resource = claims.get(RESOURCE_CLAIM)
        if not isinstance(resource, str) or not self._resource_matches(resource, request_path):
            raise AuthorizationError("Token does not authorise this resource.")

        return claims

    def _resource_matches(self, resource: str, request_path: str) -> bool:
        if resource == self.resource_url(request_path):
            return True
        return _path_of(resource) == request_path
