"""Tests for the Clair scanner against fake registry and Clair servers."""

import pytest
from aiohttp import web

from registry_vuln_client.exceptions import NotFoundError, ScannerError
from registry_vuln_client.models import EMPTY_LAYER_DIGEST
from registry_vuln_client.scanners.clair import ClairScanner
from tests.helpers import (
    client_for,
    digest_of,
    manifest_v1,
    manifest_v2,
    registry_app,
    server_url,
    static_manifests,
)

BASE, MID, TOP = digest_of(1), digest_of(2), digest_of(3)

CLAIR_VULN = {
    "Name": "CVE-2018-0001",
    "NamespaceName": "debian:9",
    "Description": "bad things",
    "Link": "https://security-tracker.debian.org/tracker/CVE-2018-0001",
    "Severity": "High",
    "FixedBy": "1.2",
}


class FakeClair:
    """Records every request and serves canned v1 and v3 answers."""

    def __init__(self, v3_status=200, v1_status=201, features=None, ancestry=None):
        self.v3_status = v3_status
        self.v1_status = v1_status
        self.features = features if features is not None else [
            {"Name": "openssl", "Vulnerabilities": [CLAIR_VULN]}
        ]
        self.ancestry = ancestry
        self.posted_layers = []
        self.posted_ancestries = []
        self.requests = []

    async def post_ancestry(self, request):
        self.requests.append(("POST", request.path))
        if self.v3_status != 200:
            return web.json_response({"message": "unimplemented"}, status=self.v3_status)
        self.posted_ancestries.append(await request.json())
        return web.json_response({"status": {}})

    async def get_ancestry(self, request):
        self.requests.append(("GET", request.path))
        return web.json_response({"ancestry": self.ancestry})

    async def post_layer(self, request):
        self.requests.append(("POST", request.path))
        body = await request.json()
        if self.v1_status != 201:
            return web.json_response(
                {"Error": {"Message": "could not download layer"}}, status=self.v1_status
            )
        self.posted_layers.append(body["Layer"])
        return web.json_response({"Layer": {"Name": body["Layer"]["Name"]}}, status=201)

    async def get_layer(self, request):
        self.requests.append(("GET", request.path))
        name = request.match_info["name"]
        known = [layer["Name"] for layer in self.posted_layers]
        if name not in known:
            return web.json_response({"Error": {"Message": "not found"}}, status=404)
        assert request.query["features"] == "true"
        assert request.query["vulnerabilities"] == "true"
        return web.json_response({"Layer": {"Name": name, "Features": self.features}})

    async def delete_layer(self, request):
        self.requests.append(("DELETE", request.path))
        return web.Response(status=404)

    def app(self):
        app = web.Application()
        app.router.add_post("/v3/ancestry", self.post_ancestry)
        app.router.add_get("/v3/ancestry", self.get_ancestry)
        app.router.add_post("/v1/layers", self.post_layer)
        app.router.add_get("/v1/layers/{name}", self.get_layer)
        app.router.add_delete("/v1/layers/{name}", self.delete_layer)
        return app


async def start(make_server, manifests, clair):
    registry = await make_server(
        registry_app([("GET", "/v2/{repo:.+}/manifests/{ref}", static_manifests(manifests))])
    )
    clair_server = await make_server(clair.app())
    return registry, ClairScanner(server_url(clair_server))


class TestLegacyFallback:
    """Test the v3 to v1 fallback."""

    @pytest.mark.asyncio
    async def test_v3_failure_falls_back_to_v1(self, make_server):
        """Test that a failing ancestry POST retries through per-layer POSTs."""
        clair = FakeClair(v3_status=500)
        manifest = manifest_v2([BASE, EMPTY_LAYER_DIGEST, MID, EMPTY_LAYER_DIGEST, TOP])
        registry, scanner = await start(make_server, {"foo": manifest}, clair)

        async with scanner, client_for(registry) as client:
            report = await scanner.scan_image(client, "foo", "latest")

        assert [layer["Name"] for layer in clair.posted_layers] == [BASE, MID, TOP]
        assert [layer["ParentName"] for layer in clair.posted_layers] == ["", BASE, MID]
        assert all(layer["Format"] == "Docker" for layer in clair.posted_layers)
        assert clair.posted_layers[0]["Path"] == f"{server_url(registry)}/v2/foo/blobs/{BASE}"

        assert report.name == TOP
        assert report.repo == "foo"
        assert report.tag == "latest"
        assert [v.name for v in report.vulns] == ["CVE-2018-0001"]
        assert report.bad_vulns == 1
        assert report.fixable[0].fixed_by == "1.2"

    @pytest.mark.asyncio
    async def test_v1_manifest_fallback(self, make_server):
        """Test layers taken from a schema 1 manifest when schema 2 is missing."""
        clair = FakeClair(v3_status=404)
        manifest = manifest_v1([TOP, EMPTY_LAYER_DIGEST, BASE])
        registry, scanner = await start(make_server, {"foo": manifest}, clair)

        async with scanner, client_for(registry) as client:
            report = await scanner.scan_image(client, "foo", "latest")

        assert [layer["Name"] for layer in clair.posted_layers] == [BASE, TOP]
        assert clair.posted_layers[1]["ParentName"] == BASE
        assert report.name == TOP

    @pytest.mark.asyncio
    async def test_both_apis_fail(self, make_server):
        clair = FakeClair(v3_status=500, v1_status=422)
        registry, scanner = await start(make_server, {"foo": manifest_v2([BASE])}, clair)

        async with scanner, client_for(registry) as client:
            with pytest.raises(ScannerError):
                await scanner.scan_image(client, "foo", "latest")


class TestMalformedResponses:
    """Test that unexpected Clair payloads surface as scanner errors."""

    @pytest.mark.asyncio
    async def test_malformed_v1_features(self, make_server):
        clair = FakeClair(v3_status=500, features=["openssl"])
        registry, scanner = await start(make_server, {"foo": manifest_v2([BASE])}, clair)

        async with scanner, client_for(registry) as client:
            with pytest.raises(ScannerError, match="clair feature"):
                await scanner.scan_image(client, "foo", "latest")

    @pytest.mark.asyncio
    async def test_malformed_ancestry_falls_back_to_v1(self, make_server):
        clair = FakeClair(ancestry={"layers": ["not a layer"]})
        registry, scanner = await start(make_server, {"foo": manifest_v2([BASE])}, clair)

        async with scanner, client_for(registry) as client:
            report = await scanner.scan_image(client, "foo", "latest")

        assert [layer["Name"] for layer in clair.posted_layers] == [BASE]
        assert [v.name for v in report.vulns] == ["CVE-2018-0001"]


class TestAncestry:
    """Test the v3 ancestry path."""

    @pytest.mark.asyncio
    async def test_v3_scan(self, make_server):
        ancestry = {
            "name": "ignored",
            "layers": [
                {
                    "layer": {"hash": BASE},
                    "detected_features": [
                        {
                            "name": "openssl",
                            "vulnerabilities": [
                                {
                                    "name": "CVE-1",
                                    "namespace_name": "debian:9",
                                    "severity": "Critical",
                                    "metadata": '{"NVD": {}}',
                                    "fixed_by": "1.1",
                                },
                                {"name": "CVE-2", "severity": "Low"},
                            ],
                        }
                    ],
                },
                {
                    "layer": {"hash": TOP},
                    "detected_features": [
                        {"name": "bash", "vulnerabilities": [{"name": "CVE-1", "severity": "Critical"}]}
                    ],
                },
            ],
        }
        clair = FakeClair(ancestry=ancestry)
        manifest = manifest_v2([EMPTY_LAYER_DIGEST, BASE, TOP])
        registry, scanner = await start(make_server, {"foo": manifest}, clair)

        async with scanner, client_for(registry) as client:
            report = await scanner.scan_image(client, "foo", "latest")

        posted = clair.posted_ancestries[0]
        assert [layer["hash"] for layer in posted["layers"]] == [BASE, TOP]
        assert all(layer["headers"] == {} for layer in posted["layers"])
        assert posted["ancestry_name"] == report.name
        assert clair.posted_layers == []

        assert [v.name for v in report.vulns] == ["CVE-1", "CVE-2"]
        assert report.vulns_by_severity["Critical"][0].metadata == {'{"NVD": {}}': ""}
        assert report.bad_vulns == 1


class TestEmptyLayers:
    """Test images made only of empty layers."""

    @pytest.mark.asyncio
    async def test_no_scan_for_empty_image(self, make_server):
        clair = FakeClair()
        manifest = manifest_v2([EMPTY_LAYER_DIGEST, EMPTY_LAYER_DIGEST])
        registry, scanner = await start(make_server, {"foo": manifest}, clair)

        async with scanner, client_for(registry) as client:
            report = await scanner.scan_image(client, "foo", "latest")

        assert clair.requests == []
        assert report.vulns == []
        assert report.bad_vulns == 0
        assert report.repo == "foo"


class TestLayerAPI:
    """Test the raw v1 layer endpoints."""

    @pytest.mark.asyncio
    async def test_get_unknown_layer(self, make_server):
        clair = FakeClair()
        server = await make_server(clair.app())

        async with ClairScanner(server_url(server)) as scanner:
            with pytest.raises(NotFoundError):
                await scanner.get_layer("sha256:unknown", features=True, vulnerabilities=True)

    @pytest.mark.asyncio
    async def test_delete_unknown_layer(self, make_server):
        clair = FakeClair()
        server = await make_server(clair.app())

        async with ClairScanner(server_url(server)) as scanner:
            await scanner.delete_layer(TOP)

        assert clair.requests == [("DELETE", f"/v1/layers/{TOP}")]

    @pytest.mark.asyncio
    async def test_post_layer_body(self, make_server):
        clair = FakeClair()
        server = await make_server(clair.app())
        layer = {"Name": TOP, "Path": "https://r/v2/foo/blobs/x", "Format": "Docker"}

        async with ClairScanner(server_url(server)) as scanner:
            result = await scanner.post_layer(layer)

        assert result == {"Name": TOP}
        assert clair.posted_layers[0] == layer
