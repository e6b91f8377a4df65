import pytest

from tierstore.spa import SPAFileServer


@pytest.fixture
def site(tmp_path):
    (tmp_path / "index.html").write_text("<html>root</html>")
    (tmp_path / "assets").mkdir()
    (tmp_path / "assets" / "app.js").write_text("console.log(1)")
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "index.html").write_text("<html>docs</html>")
    return tmp_path


def call(app, path, method="GET"):
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app({"PATH_INFO": path, "REQUEST_METHOD": method}, start_response))
    return captured["status"], captured["headers"], body


def test_root_serves_index(site):
    assert SPAFileServer(str(site)).resolve("/") == str(site / "index.html")


def test_existing_file_served_directly(site):
    assert SPAFileServer(str(site)).resolve("/assets/app.js") == str(site / "assets" / "app.js")


def test_directory_with_index(site):
    assert SPAFileServer(str(site)).resolve("/docs") == str(site / "docs" / "index.html")


@pytest.mark.parametrize("path", ["/dashboard", "/tiers/tier0/files", "/../etc/passwd", "/assets/missing.js"])
def test_unknown_paths_fall_back_to_index(site, path):
    assert SPAFileServer(str(site)).resolve(path) == str(site / "index.html")


@pytest.mark.parametrize("path", ["/api/v1/config", "/api/", "/metrics", "/healthz"])
def test_reserved_paths_not_found(site, path):
    assert SPAFileServer(str(site)).resolve(path) is None


def test_missing_index_gives_not_found(tmp_path):
    assert SPAFileServer(str(tmp_path)).resolve("/anything") is None


def test_wsgi_serves_file_content(site):
    status, headers, body = call(SPAFileServer(str(site)), "/assets/app.js")
    assert status.startswith("200")
    assert body == b"console.log(1)"
    assert headers["Content-Length"] == str(len(body))


def test_wsgi_spa_route_returns_index(site):
    status, headers, body = call(SPAFileServer(str(site)), "/settings")
    assert status.startswith("200")
    assert body == b"<html>root</html>"
    assert headers["Content-Type"].startswith("text/html")


def test_wsgi_api_path_is_404(site):
    status, _, body = call(SPAFileServer(str(site)), "/api/v1/tiers")
    assert status.startswith("404")
    assert body == b"404 page not found\n"


def test_wsgi_head_has_no_body(site):
    status, headers, body = call(SPAFileServer(str(site)), "/", method="HEAD")
    assert status.startswith("200")
    assert body == b""
    assert headers["Content-Length"] == str(len("<html>root</html>"))