import json

import respx
from httpx import Response

import consultant_cli


def _sse(*events):
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"


def test_ask_prints_tokens_and_citations(capsys):
    body = _sse(
        {"type": "token", "content": "Use two-second keyframes.\n"},
        {
            "type": "meta",
            "conversationId": "c1",
            "confidence": "sourced",
            "citations": [{"label": "Encoder guide", "url": "https://docs/encoder"}],
            "externalLinks": [],
        },
        {"type": "done"},
    )
    captured = {}
    with respx.mock(assert_all_called=True) as respx_mock:

        def handler(request):
            captured["json"] = json.loads(request.content.decode("utf-8"))
            captured["headers"] = request.headers
            return Response(200, text=body, headers={"Content-Type": "text/event-stream"})

        respx_mock.post("http://api.test/api/chat").mock(side_effect=handler)
        code = consultant_cli.main(
            ["--base-url", "http://api.test", "--tenant", "t1", "ask", "Keyframes?", "--mode", "docs"]
        )

    out = capsys.readouterr().out
    assert code == 0
    assert "Use two-second keyframes." in out
    assert "Confidence: sourced" in out
    assert "- Encoder guide https://docs/encoder" in out
    assert captured["json"]["mode"] == "docs"
    assert captured["headers"]["X-Tenant-ID"] == "t1"


def test_ask_reports_error_event(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post("http://api.test/api/chat").mock(
            return_value=Response(200, text=_sse({"type": "error", "message": "boom"}))
        )
        code = consultant_cli.main(["--base-url", "http://api.test", "ask", "hi"])
    assert code == 1
    assert "Error: boom" in capsys.readouterr().out


def test_ask_http_failure_returns_nonzero(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post("http://api.test/api/chat").mock(return_value=Response(400, json={"detail": "bad"}))
        code = consultant_cli.main(["--base-url", "http://api.test", "ask", "hi"])
    assert code == 1
    assert "HTTP 400" in capsys.readouterr().out


def test_config_command_writes_file(tmp_path, capsys):
    path = tmp_path / "config.json"
    assert consultant_cli.main(["config", "--path", str(path)]) == 0
    assert "chat_model" in json.loads(path.read_text())


def test_no_command_prints_help():
    assert consultant_cli.main([]) == 1
