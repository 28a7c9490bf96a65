# tests/test_compose.py — Compose document patches and the compose endpoints
import pytest
from httpx import AsyncClient

from compose_engine import (
    ComposeError, apply_changes, apply_image_updates, canonicalize, dump_document,
    parse_document, parse_port, parse_volume, retag_image,
)
from tests.conftest import get_auth_headers

WEB_DOC = {"services": {"web": {"image": "nginx:1.25", "ports": ["8080:80"]}}}
WEB_YAML = 'services:\n  web:\n    image: nginx:1.25\n    ports:\n      - "8080:80"\n'


class TestPorts:
    def test_short_syntax(self):
        assert parse_port("8080:80") == {"published": "8080", "target": "80", "protocol": "tcp"}

    def test_host_ip_and_protocol(self):
        assert parse_port("127.0.0.1:8080:80/udp") == {
            "host_ip": "127.0.0.1", "published": "8080", "target": "80", "protocol": "udp",
        }

    def test_ipv6_host(self):
        port = parse_port("[::1]:8080:80")
        assert port["host_ip"] == "::1"
        assert port["published"] == "8080"

    def test_target_only_and_ranges(self):
        assert parse_port(80) == {"target": "80", "protocol": "tcp"}
        assert parse_port("9000-9005:9000-9005")["published"] == "9000-9005"

    def test_long_syntax(self):
        assert parse_port({"target": 80, "published": "8080", "protocol": "TCP"}) == {
            "target": "80", "published": "8080", "protocol": "tcp",
        }

    @pytest.mark.parametrize("value", ["", "a:b", "1:2:3:4", "8080:80/icmp", {"published": "80"}])
    def test_invalid(self, value):
        with pytest.raises(ComposeError):
            parse_port(value)


class TestVolumes:
    def test_named_and_bind(self):
        assert parse_volume("data:/var/lib/data") == {
            "type": "volume", "source": "data", "target": "/var/lib/data", "read_only": False,
        }
        assert parse_volume("./conf:/etc/conf:ro")["type"] == "bind"
        assert parse_volume("./conf:/etc/conf:ro")["read_only"] is True
        assert parse_volume("/cache")["source"] == ""


class TestPatches:
    def test_image_change_leaves_input_untouched(self):
        result = apply_changes(WEB_DOC, {"service_changes": {"web": {"image": "nginx:1.27"}}})
        assert result["services"]["web"]["image"] == "nginx:1.27"
        assert WEB_DOC["services"]["web"]["image"] == "nginx:1.25"

    def test_empty_patch_is_identity(self):
        assert apply_changes(WEB_DOC, {}) == WEB_DOC
        assert apply_changes(WEB_DOC, None) == WEB_DOC

    def test_environment_merge_and_delete(self):
        doc = {"services": {"app": {"image": "app", "environment": ["A=1", "B=2"]}}}
        result = apply_changes(doc, {"service_changes": {"app": {"environment": {"B": None, "C": 3}}}})
        assert result["services"]["app"]["environment"] == {"A": "1", "C": "3"}

    def test_ports_replaced_in_long_form(self):
        result = apply_changes(WEB_DOC, {"service_changes": {"web": {"ports": ["127.0.0.1:9090:80"]}}})
        assert result["services"]["web"]["ports"] == [
            {"target": 80, "published": "9090", "host_ip": "127.0.0.1", "protocol": "tcp"},
        ]

    def test_duplicate_ports_rejected(self):
        with pytest.raises(ComposeError):
            apply_changes(WEB_DOC, {"service_changes": {"web": {"ports": ["8080:80", "8080:80"]}}})

    def test_restart_policy_validated(self):
        ok = apply_changes(WEB_DOC, {"service_changes": {"web": {"restart": "on-failure:3"}}})
        assert ok["services"]["web"]["restart"] == "on-failure:3"
        with pytest.raises(ComposeError):
            apply_changes(WEB_DOC, {"service_changes": {"web": {"restart": "sometimes"}}})

    def test_add_rename_delete(self):
        doc = {"services": {
            "web": {"image": "nginx", "depends_on": ["db"]},
            "db": {"image": "postgres:16"},
        }}
        result = apply_changes(doc, {
            "rename_services": {"db": "database"},
            "add_services": {"cache": {"image": "redis:7", "restart": "always"}},
        })
        assert list(result["services"]) == ["web", "database", "cache"]
        assert result["services"]["web"]["depends_on"] == ["database"]

        with pytest.raises(ComposeError, match="dependency"):
            apply_changes(doc, {"delete_services": ["db"]})
        with pytest.raises(ComposeError):
            apply_changes(doc, {"delete_services": ["web", "db"]})
        with pytest.raises(ComposeError):
            apply_changes(doc, {"add_services": {"web": {"image": "x"}}})

    def test_undefined_network_rejected(self):
        with pytest.raises(ComposeError, match="undefined network"):
            apply_changes(WEB_DOC, {"service_changes": {"web": {"networks": ["backend"]}}})
        result = apply_changes(WEB_DOC, {
            "network_changes": {"backend": {}},
            "service_changes": {"web": {"networks": ["backend"]}},
        })
        assert result["networks"] == {"backend": {}}

    def test_resource_in_use_cannot_be_deleted(self):
        doc = {
            "services": {"db": {"image": "postgres", "volumes": ["pgdata:/var/lib/postgresql/data"]}},
            "volumes": {"pgdata": {}},
        }
        with pytest.raises(ComposeError, match="still used"):
            apply_changes(doc, {"volume_changes": {"pgdata": None}})
        with pytest.raises(ComposeError):
            apply_changes(doc, {"network_changes": {"default": None}})

    def test_unknown_keys_rejected(self):
        with pytest.raises(ComposeError):
            apply_changes(WEB_DOC, {"rewrite_everything": True})
        with pytest.raises(ComposeError):
            apply_changes(WEB_DOC, {"service_changes": {"web": {"privileged": True}}})

    def test_image_updates(self):
        result = apply_image_updates(WEB_DOC, [{"service_name": "web", "new_tag": "1.27-alpine"}])
        assert result["services"]["web"]["image"] == "nginx:1.27-alpine"
        assert retag_image("registry:5000/team/app@sha256:abc", "v2") == "registry:5000/team/app:v2"
        with pytest.raises(ComposeError):
            apply_image_updates(WEB_DOC, [{"service_name": "api", "new_tag": "2"}])


class TestDocumentIO:
    def test_canonical_form_is_stable(self):
        once = canonicalize(WEB_YAML)
        assert canonicalize(once) == once
        assert parse_document(once) == parse_document(WEB_YAML)

    def test_order_preserved(self):
        text = dump_document({"services": {"zeta": {"image": "z"}, "alpha": {"image": "a"}}})
        assert text.index("zeta") < text.index("alpha")

    @pytest.mark.parametrize("text", ["- a\n- b\n", "services: [1, 2]\n", "key: [unclosed\n"])
    def test_rejects_bad_documents(self, text):
        with pytest.raises(ComposeError):
            parse_document(text)


@pytest.mark.asyncio
class TestComposeEndpoints:
    async def test_preview_does_not_write(self, client: AsyncClient, agent, admin_user, test_server):
        agent.compose["web"] = WEB_YAML
        headers = get_auth_headers(admin_user)
        url = f"/api/v1/servers/{test_server.id}/stacks/web/compose"

        res = await client.patch(url, json={
            "changes": {"service_changes": {"web": {"image": "nginx:1.27"}}},
            "preview": True,
        }, headers=headers)
        assert res.status_code == 200
        body = res.json()
        assert body["success"] is True
        assert body["changed"] is True
        assert "nginx:1.25" in body["original_yaml"]
        assert body["modified_yaml"] == body["original_yaml"].replace("nginx:1.25", "nginx:1.27")
        assert "PATCH" not in [m for m, _, _ in agent.calls]

        res = await client.get(url, headers=headers)
        assert "nginx:1.25" in res.json()["data"]["content"]

    async def test_patch_writes_back(self, client: AsyncClient, agent, admin_user, test_server):
        agent.compose["web"] = WEB_YAML
        headers = get_auth_headers(admin_user)
        url = f"/api/v1/servers/{test_server.id}/stacks/web/compose"

        res = await client.patch(url, json={
            "changes": {"service_changes": {"web": {"image": "nginx:1.27"}}},
        }, headers=headers)
        assert res.status_code == 200
        assert "nginx:1.27" in agent.compose["web"]

    async def test_invalid_patch_is_400(self, client: AsyncClient, agent, admin_user, test_server):
        agent.compose["web"] = WEB_YAML
        res = await client.patch(
            f"/api/v1/servers/{test_server.id}/stacks/web/compose",
            json={"changes": {"delete_services": ["web"]}},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 400
        assert res.json()["error"] == "validation_error"
        assert agent.compose["web"] == WEB_YAML

    async def test_stack_name_validated(self, client: AsyncClient, admin_user, test_server):
        res = await client.get(
            f"/api/v1/servers/{test_server.id}/stacks/..hidden/compose",
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 400
