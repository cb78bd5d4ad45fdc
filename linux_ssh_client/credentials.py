"""Authentication methods.

Each credential is an immutable value carrying only the fields its method
needs. ``authenticate(engine)`` validates those fields first and returns
``False`` without touching the engine when any is missing. A rejected
credential is a normal ``False`` result; only a broken transport raises.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

import keyring

from linux_ssh_client.engine import EngineSession
from linux_ssh_client.exceptions import CredentialError, SshErrorKind, error_from_engine
from linux_ssh_client.settings import SSHClientSettings


class AuthMethod(str, Enum):
    PASSWORD = "password"
    PUBLIC_KEY_FILE = "public_key_file"
    PUBLIC_KEY_MEMORY = "public_key_memory"
    AGENT = "agent"
    HOST_BASED = "host_based"


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _succeeded(rc: int, engine: EngineSession, message: str) -> bool:
    if rc >= 0:
        return True
    code, _ = engine.last_error()
    kind = SshErrorKind.from_code(code if code < 0 else rc)
    if kind.is_transport_failure:
        raise error_from_engine(engine, message, rc)
    return False


@dataclass(frozen=True)
class PasswordCredential:
    method: ClassVar[AuthMethod] = AuthMethod.PASSWORD

    username: str
    password: str = field(repr=False)

    def authenticate(self, engine: EngineSession) -> bool:
        if _blank(self.username) or _blank(self.password):
            return False
        rc = engine.userauth_password(self.username, self.password)
        return _succeeded(rc, engine, "Password authentication failed")


@dataclass(frozen=True)
class PublicKeyFileCredential:
    """Key pair on disk.

    The first attempt passes only the private key so the engine derives the
    public half; ``public_key_path`` is used for a second attempt if given.
    """

    method: ClassVar[AuthMethod] = AuthMethod.PUBLIC_KEY_FILE

    username: str
    private_key_path: str
    public_key_path: str | None = None
    passphrase: str | None = field(default=None, repr=False)

    def authenticate(self, engine: EngineSession) -> bool:
        if _blank(self.username) or _blank(self.private_key_path):
            return False
        rc = engine.userauth_publickey_fromfile(self.username, None, self.private_key_path, self.passphrase)
        if _succeeded(rc, engine, "Public key authentication failed"):
            return True
        if _blank(self.public_key_path):
            return False
        rc = engine.userauth_publickey_fromfile(
            self.username,
            self.public_key_path,
            self.private_key_path,
            self.passphrase,
        )
        return _succeeded(rc, engine, "Public key authentication failed")


@dataclass(frozen=True)
class PublicKeyMemoryCredential:
    method: ClassVar[AuthMethod] = AuthMethod.PUBLIC_KEY_MEMORY

    username: str
    public_key: bytes = field(repr=False)
    private_key: bytes = field(repr=False)
    passphrase: str | None = field(default=None, repr=False)

    def authenticate(self, engine: EngineSession) -> bool:
        if _blank(self.username) or not self.public_key or not self.private_key:
            return False
        rc = engine.userauth_publickey_frommemory(
            self.username,
            self.public_key,
            self.private_key,
            self.passphrase,
        )
        return _succeeded(rc, engine, "In-memory key authentication failed")


@dataclass(frozen=True)
class AgentCredential:
    """Tries every identity held by the local SSH agent, in listing order."""

    method: ClassVar[AuthMethod] = AuthMethod.AGENT

    username: str

    def authenticate(self, engine: EngineSession) -> bool:
        if _blank(self.username):
            return False
        agent = engine.agent_init()
        if agent is None:
            return False
        try:
            if agent.connect() != 0:
                return False
            if agent.list_identities() != 0:
                return False
            for identity in agent.identities():
                rc = agent.userauth(self.username, identity)
                if _succeeded(rc, engine, "Agent authentication failed"):
                    return True
            return False
        finally:
            agent.disconnect()
            agent.free()


@dataclass(frozen=True)
class HostBasedCredential:
    method: ClassVar[AuthMethod] = AuthMethod.HOST_BASED

    username: str
    public_key_path: str
    private_key_path: str
    hostname: str
    local_username: str | None = None
    passphrase: str | None = field(default=None, repr=False)

    def authenticate(self, engine: EngineSession) -> bool:
        if (
            _blank(self.username)
            or _blank(self.public_key_path)
            or _blank(self.private_key_path)
            or _blank(self.hostname)
        ):
            return False
        local_username = self.username if _blank(self.local_username) else self.local_username
        rc = engine.userauth_hostbased_fromfile(
            self.username,
            self.public_key_path,
            self.private_key_path,
            self.passphrase,
            self.hostname,
            local_username,
        )
        return _succeeded(rc, engine, "Host-based authentication failed")


SshCredential = Union[
    PasswordCredential,
    PublicKeyFileCredential,
    PublicKeyMemoryCredential,
    AgentCredential,
    HostBasedCredential,
]

_CREDENTIAL_TYPES: dict[AuthMethod, type] = {
    AuthMethod.PASSWORD: PasswordCredential,
    AuthMethod.PUBLIC_KEY_FILE: PublicKeyFileCredential,
    AuthMethod.PUBLIC_KEY_MEMORY: PublicKeyMemoryCredential,
    AuthMethod.AGENT: AgentCredential,
    AuthMethod.HOST_BASED: HostBasedCredential,
}


def credential_from_mapping(data: Mapping[str, Any]) -> SshCredential:
    """Build a credential from a config mapping with a ``method`` key.

    String key material for in-memory keys is encoded as UTF-8.
    """
    values = dict(data)
    try:
        method = AuthMethod(values.pop("method"))
    except (KeyError, ValueError) as exc:
        raise ValueError(f"unknown or missing credential method: {data.get('method')!r}") from exc
    if method is AuthMethod.PUBLIC_KEY_MEMORY:
        for key in ("public_key", "private_key"):
            if isinstance(values.get(key), str):
                values[key] = values[key].encode("utf-8")
    try:
        return _CREDENTIAL_TYPES[method](**values)
    except TypeError as exc:
        raise ValueError(f"invalid fields for {method.value} credential: {exc}") from exc


class CredentialStore:
    """Secrets kept in the system keyring, keyed by host and user."""

    def __init__(self, *, service_name: str = "linux-ssh-client") -> None:
        self._service_name = service_name

    @classmethod
    def from_settings(cls, settings: SSHClientSettings) -> CredentialStore:
        return cls(service_name=settings.keyring_service)

    def store(
        self,
        *,
        host: str,
        username: str,
        password: str | None = None,
        private_key_path: str | None = None,
        passphrase: str | None = None,
    ) -> None:
        if not password and not private_key_path:
            raise ValueError("password or private_key_path is required")

        for field_name, value in (
            ("password", password),
            ("private_key_path", private_key_path),
            ("passphrase", passphrase),
        ):
            if value:
                keyring.set_password(self._service_name, self._key(host, username, field_name), value)

    def get_credential(self, *, host: str, username: str) -> SshCredential:
        private_key_path = self._get(host, username, "private_key_path")
        if private_key_path:
            return PublicKeyFileCredential(
                username=username,
                private_key_path=private_key_path,
                passphrase=self._get(host, username, "passphrase"),
            )
        password = self._get(host, username, "password")
        if password:
            return PasswordCredential(username=username, password=password)
        raise CredentialError("No stored credentials", host=host, username=username)

    def delete(self, *, host: str, username: str) -> None:
        for field_name in ("password", "private_key_path", "passphrase"):
            key = self._key(host, username, field_name)
            if keyring.get_password(self._service_name, key) is not None:
                keyring.delete_password(self._service_name, key)

    def _get(self, host: str, username: str, field_name: str) -> str | None:
        return keyring.get_password(self._service_name, self._key(host, username, field_name))

    @staticmethod
    def _key(host: str, username: str, field_name: str) -> str:
        return f"{host}|{username}|{field_name}".lower()
