import json

import pytest
import respx
from httpx import Response

from consultant.gateway import GatewayError, HttpToolGateway


CATALOGUE = {
    "tools": [
        {
            "name": "get_stream",
            "description": "Fetch one stream",
            "input_schema": {"type": "object", "properties": {"id": {"type": "string"}}},
        },
        {"name": "list_streams"},
        {"description": "nameless entries are skipped"},
    ]
}


@pytest.mark.asyncio
async def test_refresh_loads_catalogue():
    gateway = HttpToolGateway("http://gw.test", api_key="gw-key")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["headers"] = request.headers
                return Response(200, json=CATALOGUE)

            respx_mock.get("http://gw.test/tools").mock(side_effect=handler)
            tools = await gateway.refresh()
        assert [t.name for t in tools] == ["get_stream", "list_streams"]
        assert tools[0].parameters["properties"]["id"]["type"] == "string"
        assert tools[1].parameters == {"type": "object", "properties": {}}
        assert gateway.has_tool("get_stream")
        assert not gateway.has_tool("delete_stream")
        assert captured["headers"]["Authorization"] == "Bearer gw-key"
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_call_tool_posts_parsed_arguments_and_serializes_result():
    gateway = HttpToolGateway("http://gw.test")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"result": {"id": "s1", "status": "live"}})

            respx_mock.post("http://gw.test/tools/invoke").mock(side_effect=handler)
            result = await gateway.call_tool("get_stream", '{"id": "s1"}')
        assert captured["json"] == {"tool_name": "get_stream", "arguments": {"id": "s1"}}
        assert json.loads(result) == {"id": "s1", "status": "live"}
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_call_tool_raises_on_error_payload():
    gateway = HttpToolGateway("http://gw.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://gw.test/tools/invoke").mock(
                return_value=Response(200, json={"error": "stream not found"})
            )
            with pytest.raises(GatewayError, match="stream not found"):
                await gateway.call_tool("get_stream", '{"id": "nope"}')
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_call_tool_rejects_invalid_json_arguments():
    gateway = HttpToolGateway("http://gw.test")
    try:
        with pytest.raises(GatewayError):
            await gateway.call_tool("get_stream", "{not json")
    finally:
        await gateway.close()
