"""Integration tests for the Flask routes."""

import io
from unittest.mock import MagicMock

import analysis
import app as webapp

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def _upload(client, *names, mime="image/png", data=PNG):
    files = [(io.BytesIO(data), name, mime) for name in names]
    return client.post("/api/images", data={"files": files}, content_type="multipart/form-data")


def test_index_renders_limits(client):
    response = client.get("/")
    assert response.status_code == 200
    assert b"Upload up to 4 images" in response.data


def test_analyze_requires_images(client, fake_analyzer):
    response = client.post("/analyze", json={"query": "what is this", "images": []})
    assert response.status_code == 400
    assert response.get_json() == {"error": "Query and images are required"}
    assert fake_analyzer.calls == []


def test_analyze_success_and_alias(client, fake_analyzer):
    payload = {"query": "what is this", "images": [{"url": "data:image/png;base64,AA==", "name": "a.png"}]}
    for path in ("/analyze", "/api/analyze-images"):
        response = client.post(path, json=payload)
        assert response.status_code == 200
        assert response.get_json() == {"response": fake_analyzer.reply}
    assert len(fake_analyzer.calls) == 2


def test_analyze_malformed_body(client):
    response = client.post("/analyze", data="not json", content_type="application/json")
    assert response.status_code == 500
    assert response.get_json()["error"].startswith("Error analyzing images")


def test_analyze_falls_back_when_provider_fails(monkeypatch):
    primary = MagicMock()
    primary.analyze.side_effect = RuntimeError("401 invalid api key")
    monkeypatch.setattr(webapp, "analyzer", analysis.FallbackAnalyzer(primary))
    payload = {
        "query": "What colors?",
        "images": [{"url": "data:a", "name": "a"}, {"url": "data:b", "name": "b"}],
    }

    with webapp.app.test_client() as test_client:
        response = test_client.post("/analyze", json=payload)

    assert response.status_code == 200
    assert response.get_json()["response"] == analysis.fallback_response("What colors?", 2)


def test_upload_and_state(client):
    response = _upload(client, "a.png", "b.png")
    assert response.status_code == 200
    body = response.get_json()
    assert body["images"]["count"] == 2
    assert all("url" not in image for image in body["images"]["images"])
    assert body["toasts"][0]["title"] == "Upload Successful"

    state = client.get("/api/state").get_json()
    assert state["images"]["status"] == "2 of 4 images uploaded"
    assert state["toasts"] == []


def test_image_content_by_id(client):
    body = _upload(client, "a.png").get_json()
    image_id = body["images"]["images"][0]["id"]

    response = client.get(f"/api/images/{image_id}")
    assert response.status_code == 200
    assert response.mimetype == "image/png"
    assert response.data.startswith(b"\x89PNG")


def test_image_content_unknown_id(client):
    response = client.get("/api/images/nope")
    assert response.status_code == 404
    assert response.get_json()["error"] == "Image not found"


def test_browser_script_reports_network_failures(client):
    script = client.get("/static/app.js").get_data(as_text=True)
    fetch_block = script.split("async function callApi", 1)[1].split("let payload", 1)[0]

    assert "await fetch(url, options)" in fetch_block
    assert "catch (error)" in fetch_block
    assert "showToast('Request Failed', error.message, 'destructive')" in fetch_block
    assert "/api/images/${encodeURIComponent(image.id)}" in script


def test_upload_rejects_bad_type(client):
    response = _upload(client, "notes.txt", mime="text/plain", data=b"hello")
    assert response.status_code == 400
    body = response.get_json()
    assert body["images"]["error"] == "notes.txt is not a valid image file"
    assert body["images"]["count"] == 0


def test_upload_rejects_over_capacity(client):
    _upload(client, "a.png", "b.png", "c.png")
    response = _upload(client, "d.png", "e.png")
    assert response.status_code == 400
    assert response.get_json()["images"]["error"] == "Can only upload 1 more image"


def test_remove_and_clear(client):
    body = _upload(client, "a.png", "b.png", "c.png").get_json()
    first = body["images"]["images"][0]["id"]

    body = client.delete(f"/api/images/{first}").get_json()
    assert [image["name"] for image in body["images"]["images"]] == ["b.png", "c.png"]

    body = client.post("/api/images/clear").get_json()
    assert body["images"]["count"] == 0
    assert body["images"]["total_size"] == 0


def test_chat_round_trip(client, fake_analyzer):
    _upload(client, "a.png")
    response = client.post("/api/chat", json={"query": "What is on the shelf?"})

    assert response.status_code == 200
    body = response.get_json()
    assert body["result"] == "ok"
    assert [m["type"] for m in body["messages"]] == ["user", "bot"]
    assert body["messages"][1]["content"] == fake_analyzer.reply
    assert body["messages"][0]["images"][0]["name"] == "a.png"
    assert "url" not in body["messages"][0]["images"][0]
    assert fake_analyzer.calls[0][0] == "What is on the shelf?"
    assert fake_analyzer.calls[0][1][0].url.startswith("data:image/png;base64,")


def test_chat_validation_error(client, fake_analyzer):
    _upload(client, "a.png")
    response = client.post("/api/chat", json={"query": "hi"})
    assert response.status_code == 400
    body = response.get_json()
    assert body["error"] == "Query must be at least 3 characters long"
    assert body["messages"] == []
    assert fake_analyzer.calls == []


def test_chat_without_images(client):
    response = client.post("/api/chat", json={"query": "What is this?"})
    assert response.status_code == 400
    assert response.get_json()["messages"] == []


def test_chat_endpoint_error_becomes_error_entry(client, monkeypatch):
    monkeypatch.setattr(webapp, "analyze_locally", lambda payload: ({"error": "Error analyzing images: boom"}, 500))
    _upload(client, "a.png")

    body = client.post("/api/chat", json={"query": "What is this?"}).get_json()

    assert [m["type"] for m in body["messages"]] == ["user", "error"]
    assert body["messages"][1]["content"] == "Error analyzing images: boom"
    assert body["toasts"][-1]["title"] == "Analysis Failed"


def test_reset_clears_transcript(client):
    _upload(client, "a.png")
    client.post("/api/chat", json={"query": "What is this?"})
    body = client.post("/api/reset").get_json()
    assert body["messages"] == []
    assert body["images"]["count"] == 1


def test_sessions_are_isolated(fake_analyzer):
    with webapp.app.test_client() as first, webapp.app.test_client() as second:
        _upload(first, "a.png")
        assert second.get("/api/state").get_json()["images"]["count"] == 0
        assert first.get("/api/state").get_json()["images"]["count"] == 1


def test_http_transport_when_analyze_url_configured(monkeypatch):
    monkeypatch.setattr(webapp, "ANALYZE_URL", "http://analysis.internal/analyze")
    transport = webapp.make_transport()
    assert isinstance(transport, webapp.HttpAnalysisTransport)
    assert transport.url == "http://analysis.internal/analyze"
