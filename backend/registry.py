# registry.py — Registry credentials and image-reference parsing
# Credentials are stored per server with a stack pattern and an optional
# image pattern. Passwords are encrypted at rest and decrypted only while
# an agent request that needs them is being built.

import logging
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crypto import Crypto
from errors import NotFound, ValidationFailed, Conflict
from models import ServerRegistryCredential
from rbac import matches_pattern, pattern_specificity, validate_pattern

logger = logging.getLogger("berth.registry")

DEFAULT_REGISTRY = "docker.io"
DOCKER_HUB_ALIASES = frozenset({"docker.io", "index.docker.io", "registry-1.docker.io", "registry.hub.docker.com"})


class RegistryCredentialCreate(BaseModel):
    registry_url: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    stack_pattern: str = "*"
    image_pattern: Optional[str] = None


class RegistryCredentialUpdate(BaseModel):
    registry_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    stack_pattern: Optional[str] = None
    image_pattern: Optional[str] = None


def normalize_registry_url(url: str) -> str:
    """``https://GHCR.io/`` -> ``ghcr.io``"""
    value = (url or "").strip().lower()
    for scheme in ("https://", "http://"):
        if value.startswith(scheme):
            value = value[len(scheme):]
            break
    value = value.rstrip("/")
    if value.partition("/")[0] in DOCKER_HUB_ALIASES:
        return DEFAULT_REGISTRY
    return value


def extract_registry_from_image(image: str) -> str:
    ref = (image or "").strip()
    if "@" in ref:
        ref = ref.split("@", 1)[0]
    first, sep, _ = ref.partition("/")
    if not sep:
        return DEFAULT_REGISTRY
    if "." in first or ":" in first or first == "localhost":
        return normalize_registry_url(first)
    return DEFAULT_REGISTRY


def image_repository(image: str) -> str:
    """Image reference without tag or digest."""
    ref = image.split("@", 1)[0]
    slash = ref.rfind("/")
    colon = ref.rfind(":")
    if colon > slash:
        ref = ref[:colon]
    return ref


def extract_registries(compose_text: str) -> List[str]:
    """Distinct registries referenced by the services of a compose file."""
    try:
        doc = yaml.safe_load(compose_text) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"invalid compose YAML: {e}")
    if not isinstance(doc, dict):
        raise ValueError("compose document must be a mapping")
    registries: List[str] = []
    services = doc.get("services") or {}
    if not isinstance(services, dict):
        return registries
    for service in services.values():
        if not isinstance(service, dict):
            continue
        image = service.get("image")
        if not isinstance(image, str) or not image.strip():
            continue
        registry = extract_registry_from_image(image)
        if registry not in registries:
            registries.append(registry)
    return registries


def select_credential(
    credentials: List[ServerRegistryCredential],
    stack_name: str,
    registry: str,
    image: Optional[str] = None,
) -> Optional[ServerRegistryCredential]:
    """Best credential for (stack, registry[, image]); most specific stack pattern wins."""
    registry = normalize_registry_url(registry)
    candidates = []
    for cred in credentials:
        if normalize_registry_url(cred.registry_url) != registry:
            continue
        if not matches_pattern(stack_name, cred.stack_pattern or "*"):
            continue
        if cred.image_pattern and image is not None:
            if not (
                matches_pattern(image, cred.image_pattern)
                or matches_pattern(image_repository(image), cred.image_pattern)
            ):
                continue
        candidates.append(cred)
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda c: (
            pattern_specificity(c.stack_pattern or "*"),
            1 if (c.image_pattern and image) else 0,
            len(c.stack_pattern or ""),
            -(c.id or 0),
        ),
    )


def credential_to_dict(cred: ServerRegistryCredential) -> Dict[str, Any]:
    return {
        "id": cred.id,
        "server_id": cred.server_id,
        "stack_pattern": cred.stack_pattern,
        "registry_url": cred.registry_url,
        "image_pattern": cred.image_pattern,
        "username": cred.username,
        "created_at": cred.created_at.isoformat() if cred.created_at else None,
        "updated_at": cred.updated_at.isoformat() if cred.updated_at else None,
    }


class RegistryService:
    def __init__(self, db: AsyncSession, crypto: Crypto):
        self.db = db
        self.crypto = crypto

    async def list_credentials(self, server_id: int) -> List[ServerRegistryCredential]:
        stmt = (
            select(ServerRegistryCredential)
            .where(ServerRegistryCredential.server_id == server_id)
            .order_by(ServerRegistryCredential.registry_url, ServerRegistryCredential.id)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_credential(self, server_id: int, credential_id: int) -> ServerRegistryCredential:
        cred = await self.db.get(ServerRegistryCredential, credential_id)
        if cred is None or cred.server_id != server_id:
            raise NotFound("Registry credential not found")
        return cred

    async def _ensure_unique(
        self, server_id: int, registry_url: str, stack_pattern: str,
        image_pattern: Optional[str], exclude_id: Optional[int] = None,
    ) -> None:
        for cred in await self.list_credentials(server_id):
            if cred.id == exclude_id:
                continue
            if (
                cred.registry_url == registry_url
                and cred.stack_pattern == stack_pattern
                and (cred.image_pattern or None) == (image_pattern or None)
            ):
                raise Conflict("A credential for this registry and pattern already exists")

    async def create_credential(self, server_id: int, body: RegistryCredentialCreate) -> ServerRegistryCredential:
        registry_url = normalize_registry_url(body.registry_url)
        if not registry_url:
            raise ValidationFailed("Registry URL is required")
        stack_pattern = validate_pattern(body.stack_pattern)
        image_pattern = (body.image_pattern or "").strip() or None
        await self._ensure_unique(server_id, registry_url, stack_pattern, image_pattern)

        cred = ServerRegistryCredential(
            server_id=server_id,
            stack_pattern=stack_pattern,
            registry_url=registry_url,
            image_pattern=image_pattern,
            username=body.username.strip(),
            encrypted_password=self.crypto.encrypt(body.password),
        )
        self.db.add(cred)
        await self.db.flush()
        logger.info(f"Registry credential {cred.id} created for server {server_id} ({registry_url})")
        return cred

    async def update_credential(
        self, server_id: int, credential_id: int, body: RegistryCredentialUpdate
    ) -> ServerRegistryCredential:
        cred = await self.get_credential(server_id, credential_id)
        if body.registry_url is not None:
            registry_url = normalize_registry_url(body.registry_url)
            if not registry_url:
                raise ValidationFailed("Registry URL is required")
            cred.registry_url = registry_url
        if body.stack_pattern is not None:
            cred.stack_pattern = validate_pattern(body.stack_pattern)
        if body.image_pattern is not None:
            cred.image_pattern = body.image_pattern.strip() or None
        if body.username:
            cred.username = body.username.strip()
        if body.password:
            cred.encrypted_password = self.crypto.encrypt(body.password)
        await self._ensure_unique(
            server_id, cred.registry_url, cred.stack_pattern, cred.image_pattern, exclude_id=cred.id
        )
        await self.db.flush()
        return cred

    async def delete_credential(self, server_id: int, credential_id: int) -> None:
        cred = await self.get_credential(server_id, credential_id)
        await self.db.delete(cred)
        await self.db.flush()

    def to_agent_format(self, cred: ServerRegistryCredential) -> Dict[str, str]:
        """Decrypted credential in the shape the agent expects."""
        return {
            "registry": cred.registry_url,
            "username": cred.username,
            "password": self.crypto.decrypt(cred.encrypted_password),
            "stack_pattern": cred.stack_pattern,
            "image_pattern": cred.image_pattern or "",
        }

    async def agent_credentials(self, server_id: int) -> List[Dict[str, str]]:
        return [self.to_agent_format(c) for c in await self.list_credentials(server_id)]

    async def credentials_for_stack(self, server_id: int, stack_name: str, compose_text: str) -> List[Dict[str, str]]:
        """Decrypted credentials for every registry a stack's compose file pulls from."""
        try:
            registries = extract_registries(compose_text)
        except ValueError as e:
            logger.warning(f"Could not extract registries for {stack_name}: {e}")
            return []
        if not registries:
            return []
        stored = await self.list_credentials(server_id)
        result = []
        for registry in registries:
            cred = select_credential(stored, stack_name, registry)
            if cred is None:
                logger.debug(f"No credential for {registry} on stack {stack_name}")
                continue
            agent_cred = self.to_agent_format(cred)
            result.append({
                "registry": agent_cred["registry"],
                "username": agent_cred["username"],
                "password": agent_cred["password"],
            })
        return result
