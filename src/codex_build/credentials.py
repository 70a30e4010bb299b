"""Credential lookup and scoped secret handling.

Secrets are resolved from a :class:`CredentialStore` immediately before the
stage that needs them and released when the stage's ``with`` block exits.
The resolver is the only place that turns a credential reference into
something git or the agent can consume:

- :meth:`CredentialResolver.api_key` yields the API token.
- :meth:`CredentialResolver.remote_access` yields a :class:`RemoteAccess`
  which is either a :class:`PlainRemote`, an :class:`AuthenticatedRemote`
  (credentials embedded in the URL), or an :class:`SshRemote` (transient key
  file plus a one-shot ``GIT_SSH_COMMAND``).

Secret-bearing values are held as :class:`pydantic.SecretStr`, so formatting
a remote or a credential for a log line prints ``**********`` instead of the
secret.  Transient key files are deleted on every exit path.
"""

from __future__ import annotations

import abc
import logging
import os
import shlex
import shutil
import stat
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union
from urllib.parse import quote, urlsplit

from pydantic import SecretStr, TypeAdapter, ValidationError

from codex_build.errors import CredentialError
from codex_build.redaction import redact_url_credentials
from codex_build.schemas import (
    CredentialKind,
    CredentialMaterial,
    SecretText,
    SshPrivateKey,
    UsernamePassword,
)

logger = logging.getLogger(__name__)

SSH_PASSPHRASE_ENV = "CODEX_BUILD_SSH_PASSPHRASE"
DEFAULT_KEYRING_SERVICE = "codex-build"
_ASKPASS_SCRIPT = f'#!/bin/sh\nprintf \'%s\\n\' "${SSH_PASSPHRASE_ENV}"\n'

_MATERIAL_ADAPTER: TypeAdapter[CredentialMaterial] = TypeAdapter(CredentialMaterial)
_STORE_ADAPTER: TypeAdapter[dict[str, CredentialMaterial]] = TypeAdapter(
    dict[str, CredentialMaterial]
)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class CredentialStore(abc.ABC):
    """Host secret store mapping opaque credential ids to material."""

    @abc.abstractmethod
    def lookup(self, credential_id: str) -> CredentialMaterial | None:
        """Return the material for *credential_id*, or ``None`` when unknown."""


class MappingCredentialStore(CredentialStore):
    """In-memory store.  Values may be models or plain dicts with a ``kind`` key."""

    def __init__(self, entries: Mapping[str, Any] | None = None) -> None:
        self._entries: dict[str, CredentialMaterial] = {}
        for key, value in (entries or {}).items():
            self.add(key, value)

    def add(self, credential_id: str, material: Any) -> None:
        """Register *material* under *credential_id*."""
        if not isinstance(material, (SecretText, UsernamePassword, SshPrivateKey)):
            material = _MATERIAL_ADAPTER.validate_python(material)
        self._entries[credential_id] = material

    def lookup(self, credential_id: str) -> CredentialMaterial | None:
        return self._entries.get(credential_id)


class JsonFileCredentialStore(CredentialStore):
    """Store backed by a JSON object of ``{"<id>": {"kind": ..., ...}}`` entries.

    The file is read on every lookup so secrets are not cached in memory
    between stages.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def lookup(self, credential_id: str) -> CredentialMaterial | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CredentialError(f"Cannot read credentials file {self.path}: {exc}") from exc
        try:
            entries = _STORE_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            # Error details may echo secret values; report only the locations.
            locations = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            raise CredentialError(
                f"Malformed credentials file {self.path} (invalid entries: {', '.join(locations)})"
            ) from None
        return entries.get(credential_id)


class KeyringCredentialStore(CredentialStore):
    """Store backed by the OS keyring.

    Each credential is one keyring password under *service*, keyed by its id,
    whose value is the JSON entry (``{"kind": ..., ...}``).
    """

    def __init__(self, service: str = DEFAULT_KEYRING_SERVICE) -> None:
        self.service = service

    def lookup(self, credential_id: str) -> CredentialMaterial | None:
        import keyring
        from keyring.errors import KeyringError

        try:
            raw = keyring.get_password(self.service, credential_id)
        except KeyringError as exc:
            raise CredentialError(
                f"Keyring lookup of '{credential_id}' in service '{self.service}' failed: {exc}"
            ) from exc
        if raw is None:
            return None
        try:
            return _MATERIAL_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            locations = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            raise CredentialError(
                f"Malformed keyring entry '{credential_id}' (invalid fields: "
                f"{', '.join(locations) or 'entry'})"
            ) from None


# ---------------------------------------------------------------------------
# Remote access modes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlainRemote:
    """Repository URL used unmodified (anonymous or host-preconfigured access)."""

    url: str
    embeds_secret = False

    @property
    def display_url(self) -> str:
        return redact_url_credentials(self.url)

    def git_url(self) -> str:
        return self.url

    def git_env(self) -> dict[str, str]:
        return {}


@dataclass(frozen=True)
class AuthenticatedRemote:
    """HTTP(S) URL with percent-encoded ``user:password@`` userinfo."""

    url: SecretStr
    display_url: str
    embeds_secret = True

    def git_url(self) -> str:
        return self.url.get_secret_value()

    def git_env(self) -> dict[str, str]:
        return {}


@dataclass(frozen=True)
class SshRemote:
    """Remote reached through a transient private key file."""

    url: str
    key_path: Path
    ssh_command: str
    askpass_env: dict[str, SecretStr] = field(default_factory=dict, repr=False)
    embeds_secret = False

    @property
    def display_url(self) -> str:
        return redact_url_credentials(self.url)

    def git_url(self) -> str:
        return self.url

    def git_env(self) -> dict[str, str]:
        env = {"GIT_SSH_COMMAND": self.ssh_command}
        env.update({key: value.get_secret_value() for key, value in self.askpass_env.items()})
        return env


RemoteAccess = Union[PlainRemote, AuthenticatedRemote, SshRemote]


def build_authenticated_url(repository_url: str, username: str, password: str) -> str:
    """Splice percent-encoded credentials into the authority of *repository_url*.

    Space encodes as ``%20`` and ``/`` as ``%2F``.  Everything after the
    authority's userinfo is copied byte-for-byte; existing userinfo is
    replaced.
    """
    parsed = urlsplit(repository_url)
    if not parsed.scheme or not parsed.netloc:
        raise CredentialError(
            "Username/password credentials require a URL with a scheme and host, got "
            f"{redact_url_credentials(repository_url)!r}"
        )
    scheme, _, rest = repository_url.partition("://")
    authority_end = len(rest)
    for delimiter in "/?#":
        idx = rest.find(delimiter)
        if idx != -1:
            authority_end = min(authority_end, idx)
    authority, remainder = rest[:authority_end], rest[authority_end:]
    host = authority.rpartition("@")[2]
    userinfo = f"{quote(username, safe='')}:{quote(password, safe='')}"
    return f"{scheme}://{userinfo}@{host}{remainder}"


def build_ssh_command(key_path: Path) -> str:
    """Return a ``GIT_SSH_COMMAND`` value using *key_path* and no host-key checks."""
    return " ".join(
        [
            "ssh",
            "-i",
            shlex.quote(str(key_path)),
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
        ]
    )


def _write_private(path: Path, content: str, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
        handle.write(content)
    os.chmod(path, mode)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class CredentialResolver:
    """Resolve credential references into scoped secret material.

    Parameters
    ----------
    store:
        The host secret store.
    temp_dir:
        Parent directory for transient key files.  Defaults to the system
        temp directory.
    """

    def __init__(self, store: CredentialStore, *, temp_dir: str | Path | None = None) -> None:
        self.store = store
        self.temp_dir = Path(temp_dir) if temp_dir is not None else None

    def resolve(self, credential_id: str, expected: tuple[CredentialKind, ...]) -> CredentialMaterial:
        """Return the material for *credential_id* if it is one of *expected* kinds."""
        material = self.store.lookup(credential_id)
        if material is None:
            raise CredentialError(f"Credential '{credential_id}' not found")
        if material.kind not in expected:
            wanted = " or ".join(kind.value for kind in expected)
            raise CredentialError(
                f"Credential '{credential_id}' has wrong type: "
                f"expected {wanted}, got {material.kind}"
            )
        return material

    @contextmanager
    def api_key(self, credential_id: str) -> Iterator[SecretStr]:
        """Yield the secret-text token for *credential_id*."""
        material = self.resolve(credential_id, (CredentialKind.SECRET_TEXT,))
        if not isinstance(material, SecretText):
            raise CredentialError(
                f"Credential '{credential_id}' is not a secret_text credential"
            )
        try:
            yield material.secret
        finally:
            del material

    @contextmanager
    def remote_access(
        self,
        repository_url: str,
        credential_id: str | None = None,
    ) -> Iterator[RemoteAccess]:
        """Yield the :data:`RemoteAccess` for *repository_url*.

        Transient files created for SSH access are removed when the block
        exits, whether it exits normally or by exception.
        """
        if not (credential_id or "").strip():
            yield PlainRemote(repository_url)
            return

        material = self.resolve(
            credential_id,
            (CredentialKind.USERNAME_PASSWORD, CredentialKind.SSH_PRIVATE_KEY),
        )
        if isinstance(material, UsernamePassword):
            url = build_authenticated_url(
                repository_url,
                material.username,
                material.password.get_secret_value(),
            )
            yield AuthenticatedRemote(
                url=SecretStr(url),
                display_url=redact_url_credentials(url),
            )
            return

        if not isinstance(material, SshPrivateKey):
            raise CredentialError(
                f"Credential '{credential_id}' is not a username_password "
                "or ssh_private_key credential"
            )
        key_dir = Path(tempfile.mkdtemp(prefix="codex-build-ssh-", dir=self.temp_dir))
        try:
            key_path = key_dir / "id_key"
            key_text = material.private_key.get_secret_value()
            if not key_text.endswith("\n"):
                key_text += "\n"
            _write_private(key_path, key_text, stat.S_IRUSR | stat.S_IWUSR)

            askpass_env: dict[str, SecretStr] = {}
            if material.passphrase is not None and material.passphrase.get_secret_value():
                askpass_path = key_dir / "askpass.sh"
                _write_private(askpass_path, _ASKPASS_SCRIPT, stat.S_IRWXU)
                askpass_env = {
                    "SSH_ASKPASS": SecretStr(str(askpass_path)),
                    "SSH_ASKPASS_REQUIRE": SecretStr("force"),
                    "DISPLAY": SecretStr(os.environ.get("DISPLAY", ":0")),
                    SSH_PASSPHRASE_ENV: material.passphrase,
                }
            logger.debug("Materialized SSH key for credential '%s'", credential_id)
            yield SshRemote(
                url=repository_url,
                key_path=key_path,
                ssh_command=build_ssh_command(key_path),
                askpass_env=askpass_env,
            )
        finally:
            shutil.rmtree(key_dir, ignore_errors=True)
            logger.debug("Removed transient SSH key material for credential '%s'", credential_id)
