# tests/test_registry.py — Registry parsing, credential selection and the credential endpoints
import pytest
from httpx import AsyncClient

from models import ServerRegistryCredential
from registry import (
    RegistryService, extract_registries, extract_registry_from_image, image_repository,
    normalize_registry_url, select_credential,
)
from tests.conftest import get_auth_headers


@pytest.mark.parametrize("image,registry", [
    ("nginx", "docker.io"),
    ("nginx:1.25", "docker.io"),
    ("library/nginx", "docker.io"),
    ("ghcr.io/x/y", "ghcr.io"),
    ("ghcr.io/x/y@sha256:abc", "ghcr.io"),
    ("localhost:5000/x", "localhost:5000"),
    ("localhost/x", "localhost"),
    ("Registry.Example.com/team/app:1", "registry.example.com"),
    ("index.docker.io/library/nginx", "docker.io"),
    ("registry-1.docker.io/team/app", "docker.io"),
])
def test_extract_registry_from_image(image, registry):
    assert extract_registry_from_image(image) == registry


def test_normalize_registry_url():
    assert normalize_registry_url("https://GHCR.io/") == "ghcr.io"
    assert normalize_registry_url("http://localhost:5000") == "localhost:5000"
    assert normalize_registry_url("  docker.io ") == "docker.io"


@pytest.mark.parametrize("alias", [
    "index.docker.io",
    "https://index.docker.io/v1/",
    "registry-1.docker.io",
    "Registry.Hub.Docker.com",
])
def test_docker_hub_aliases_normalize(alias):
    assert normalize_registry_url(alias) == "docker.io"


def test_image_repository():
    assert image_repository("nginx:1.25") == "nginx"
    assert image_repository("localhost:5000/app") == "localhost:5000/app"
    assert image_repository("ghcr.io/a/b:2@sha256:ff") == "ghcr.io/a/b"


def test_extract_registries():
    text = (
        "services:\n"
        "  web: {image: 'ghcr.io/team/web:1'}\n"
        "  db: {image: 'postgres:16'}\n"
        "  worker: {image: 'ghcr.io/team/worker'}\n"
        "  built: {build: .}\n"
    )
    assert extract_registries(text) == ["ghcr.io", "docker.io"]
    with pytest.raises(ValueError):
        extract_registries("- not a mapping\n")


def _cred(cred_id, registry_url, stack_pattern="*", image_pattern=None):
    return ServerRegistryCredential(
        id=cred_id, server_id=1, registry_url=registry_url, stack_pattern=stack_pattern,
        image_pattern=image_pattern, username=f"user{cred_id}", encrypted_password="x",
    )


class TestSelectCredential:
    def test_most_specific_stack_pattern_wins(self):
        creds = [_cred(1, "ghcr.io"), _cred(2, "ghcr.io", "web-*"), _cred(3, "ghcr.io", "web-api")]
        assert select_credential(creds, "web-api", "ghcr.io").id == 3
        assert select_credential(creds, "web-ui", "ghcr.io").id == 2
        assert select_credential(creds, "db", "ghcr.io").id == 1

    def test_registry_must_match(self):
        creds = [_cred(1, "ghcr.io")]
        assert select_credential(creds, "web", "docker.io") is None
        assert select_credential(creds, "web", "https://GHCR.io/").id == 1

    def test_docker_hub_alias_matches_default_registry(self):
        creds = [_cred(1, "https://index.docker.io/v1/")]
        assert select_credential(creds, "web", "docker.io").id == 1
        assert select_credential(creds, "web", extract_registry_from_image("nginx")).id == 1

    def test_image_pattern_filters(self):
        creds = [_cred(1, "ghcr.io", image_pattern="ghcr.io/team/*"), _cred(2, "ghcr.io")]
        assert select_credential(creds, "web", "ghcr.io", "ghcr.io/team/web:1").id == 1
        assert select_credential(creds, "web", "ghcr.io", "ghcr.io/other/web:1").id == 2


@pytest.mark.asyncio
class TestRegistryService:
    async def test_credentials_for_stack(self, db_session, container, test_server):
        service = RegistryService(db_session, container.crypto)
        from registry import RegistryCredentialCreate
        await service.create_credential(test_server.id, RegistryCredentialCreate(
            registry_url="https://ghcr.io/", username="bot", password="s3cret",
        ))
        await db_session.commit()

        compose = "services:\n  web: {image: 'ghcr.io/team/web'}\n  db: {image: 'postgres'}\n"
        creds = await service.credentials_for_stack(test_server.id, "web", compose)
        assert creds == [{"registry": "ghcr.io", "username": "bot", "password": "s3cret"}]

        stored = await service.list_credentials(test_server.id)
        assert stored[0].encrypted_password != "s3cret"

    async def test_bad_compose_yields_nothing(self, db_session, container, test_server):
        service = RegistryService(db_session, container.crypto)
        assert await service.credentials_for_stack(test_server.id, "web", "key: [") == []


@pytest.mark.asyncio
class TestRegistryEndpoints:
    async def test_crud_hides_password(self, client: AsyncClient, admin_user, test_server):
        headers = get_auth_headers(admin_user)
        base = f"/api/v1/servers/{test_server.id}/registries"
        res = await client.post(base, json={
            "registry_url": "ghcr.io", "username": "bot", "password": "s3cret", "stack_pattern": "web-*",
        }, headers=headers)
        assert res.status_code == 200
        cred = res.json()["data"]
        assert "password" not in cred and "encrypted_password" not in cred
        assert cred["stack_pattern"] == "web-*"

        res = await client.post(base, json={
            "registry_url": "https://ghcr.io", "username": "other", "password": "x", "stack_pattern": "web-*",
        }, headers=headers)
        assert res.status_code == 409

        res = await client.patch(f"{base}/{cred['id']}", json={"username": "robot"}, headers=headers)
        assert res.json()["data"]["username"] == "robot"

        res = await client.delete(f"{base}/{cred['id']}", headers=headers)
        assert res.status_code == 200
        res = await client.get(f"{base}/{cred['id']}", headers=headers)
        assert res.status_code == 404

    async def test_plain_user_cannot_manage(self, client: AsyncClient, test_user, test_server):
        res = await client.get(
            f"/api/v1/servers/{test_server.id}/registries", headers=get_auth_headers(test_user)
        )
        assert res.status_code == 404
