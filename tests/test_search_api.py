"""HTTP surface: search, channel listing and refresh requests."""

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import write_feed
from fcsearch.core.dependencies import create_services
from fcsearch.data.models import ChannelConfig, ServiceConfig
from fcsearch.main import app


@pytest.fixture
async def services(tmp_path):
    config = ServiceConfig(
        channels=[
            ChannelConfig(name="unstable", path=write_feed(tmp_path / "unstable")),
            ChannelConfig(name="stable", path=write_feed(tmp_path / "stable")),
        ],
    )
    services = create_services(config)
    await services.scheduler.refresh("unstable")
    yield services
    await services.shutdown()


@pytest.fixture
async def client(services):
    """Create async test client bound to freshly built services."""
    app.state.services = services
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.state.services = None


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_search_packages(client):
    response = await client.get("/search", params={"q": "nginx", "channel": "unstable", "kind": "package"})

    assert response.status_code == 200
    body = response.json()
    assert [item["attribute_path"] for item in body["items"]] == ["nginx", "nginx-mainline", "my-nginx-tool"]
    assert body["total"] == 3
    assert body["sequence"] == 1
    assert body["items"][0]["license"][0]["spdx_id"] == "BSD-2-Clause"


async def test_search_options_endpoint(client):
    response = await client.get("/search/options", params={"q": "nginx.enable", "channel": "unstable"})

    assert response.status_code == 200
    [item] = response.json()["items"]
    assert item["kind"] == "option"
    assert item["path"] == "services.nginx.enable"
    assert item["default"] == "false"


async def test_search_packages_endpoint(client):
    response = await client.get("/search/packages", params={"q": "hello", "channel": "unstable"})

    assert response.status_code == 200
    assert [item["attribute_path"] for item in response.json()["items"]] == ["hello"]


async def test_search_defaults_to_ready_channel(client):
    response = await client.get("/search", params={"q": "hello"})

    assert response.status_code == 200
    assert response.json()["channel"] == "unstable"


async def test_paging_parameters(client):
    response = await client.get("/search", params={"q": "nginx", "channel": "unstable", "page": 2, "limit": 2})

    body = response.json()
    assert body["page"] == 2
    assert body["limit"] == 2
    assert len(body["items"]) == 2


async def test_unknown_channel(client):
    response = await client.get("/search", params={"q": "nginx", "channel": "nope"})

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "UnknownChannel"


async def test_channel_not_ready(client):
    response = await client.get("/search", params={"q": "nginx", "channel": "stable"})

    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "ChannelNotReady"


async def test_empty_query(client):
    response = await client.get("/search", params={"q": "", "channel": "stable"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 0
    assert body["items"] == []
    assert body["ready"] is False


@pytest.mark.parametrize("params", [{"limit": 0}, {"page": 0}, {"kind": "bogus"}])
async def test_invalid_parameters(client, params):
    response = await client.get("/search", params={"q": "nginx", "channel": "unstable", **params})

    assert response.status_code == 422


async def test_htmx_request_gets_html_fragment(client):
    response = await client.get(
        "/search",
        params={"q": "nginx", "channel": "unstable"},
        headers={"HX-Request": "true"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert "5 results" in response.text
    assert "services.nginx.enable" in response.text


async def test_list_channels(client):
    response = await client.get("/channels")

    assert response.status_code == 200
    channels = {c["name"]: c for c in response.json()["channels"]}
    assert channels["unstable"]["ready"] is True
    assert channels["unstable"]["record_count"] == 7
    assert channels["stable"]["ready"] is False
    assert channels["stable"]["last_outcome"] == "never"


async def test_refresh_unknown_channel(client):
    response = await client.post("/channels/nope/refresh")

    assert response.status_code == 404


async def test_refresh_builds_channel(client, services):
    response = await client.post("/channels/stable/refresh")

    assert response.status_code == 202
    assert response.json()["accepted"] is True

    await services.scheduler.wait_idle()
    assert services.registry.get("stable") is not None


async def test_landing_page(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert "unstable" in response.text


async def test_services_not_initialized():
    app.state.services = None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/search", params={"q": "nginx"})

    assert response.status_code == 503


async def test_empty_kind_from_search_form_searches_everything(client):
    response = await client.get(
        "/search",
        params={"q": "nginx", "channel": "unstable", "kind": ""},
        headers={"HX-Request": "true"},
    )

    assert response.status_code == 200
    assert "5 results" in response.text

    response = await client.get("/search", params={"q": "nginx", "channel": "unstable", "kind": ""})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 5
    assert {item["kind"] for item in body["items"]} == {"package", "option"}


async def test_more_button_replaces_itself_with_next_page(client):
    first = await client.get(
        "/search",
        params={"q": "nginx", "channel": "unstable", "limit": 2},
        headers={"HX-Request": "true"},
    )

    assert "5 results" in first.text
    assert 'hx-swap="outerHTML"' in first.text
    assert "page=2" in first.text

    second = await client.get(
        "/search",
        params={"q": "nginx", "channel": "unstable", "limit": 2, "page": 2},
        headers={"HX-Request": "true"},
    )

    assert second.status_code == 200
    assert "results in" not in second.text
    assert second.text.count("<li>") == 2
    assert "page=3" in second.text

    last = await client.get(
        "/search",
        params={"q": "nginx", "channel": "unstable", "limit": 2, "page": 3},
        headers={"HX-Request": "true"},
    )

    assert last.text.count("<li>") == 1
    assert "More" not in last.text


async def test_option_description_and_declarations_rendered(client):
    response = await client.get(
        "/search",
        params={"q": "services.nginx", "channel": "unstable", "kind": "option"},
        headers={"HX-Request": "true"},
    )

    assert "<p>Nginx package to use.</p>" in response.text
    link = "https://github.com/NixOS/nixpkgs/blob/master/nixos/modules/services/web-servers/nginx/default.nix"
    assert f'<a href="{link}">' in response.text
    assert "<i>nixos/modules/services/web-servers/nginx/default.nix</i>" in response.text
