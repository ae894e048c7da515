import json

import pytest

from consultant.policy import AccessPolicy, InvalidModeError, contains_mutation, normalize_mode
from consultant.schemas import ToolSpec


def test_normalize_mode_aliases_and_rejects_unknown():
    assert normalize_mode(None) == ""
    assert normalize_mode(" Docs ") == "docs"
    assert normalize_mode("full") == ""
    assert normalize_mode("heartbeat") == "heartbeat"
    with pytest.raises(InvalidModeError):
        normalize_mode("admin")


def test_docs_mode_allows_read_only_and_diagnose_prefix():
    policy = AccessPolicy("docs")
    assert policy.allows("search_knowledge")
    assert policy.allows("execute_query")
    assert policy.allows("diagnose_rebuffering")
    assert not policy.allows("create_stream")


def test_heartbeat_mode_only_searches_knowledge():
    policy = AccessPolicy("heartbeat")
    tools = [ToolSpec(name="search_knowledge"), ToolSpec(name="search_web"), ToolSpec(name="get_stream")]
    assert [t.name for t in policy.filter_tools(tools)] == ["search_knowledge"]


def test_default_mode_allows_everything():
    policy = AccessPolicy()
    assert policy.allows("delete_stream")
    assert policy.check("delete_stream", '{"query": "mutation { deleteStream }"}') is None


def test_check_blocks_disallowed_tool_with_message():
    outcome = AccessPolicy("docs").check("delete_stream", "{}")
    assert outcome is not None
    assert outcome.content == "Tool delete_stream is not available in documentation mode."
    assert outcome.detail.payload["blocked"] == "mode"


def test_check_blocks_mutation_in_restricted_mode():
    arguments = json.dumps({"query": "# rename\n  mutation Rename { updateStream(id: 1) { id } }"})
    outcome = AccessPolicy("docs").check("execute_query", arguments)
    assert outcome is not None
    assert outcome.content == "Mutations are not allowed in documentation mode."


def test_contains_mutation_ignores_queries_and_mentions():
    assert not contains_mutation(json.dumps({"query": "query { streams { id } }"}))
    assert not contains_mutation(json.dumps({"query": "query { mutationLog { id } }"}))
    assert not contains_mutation("")


def test_contains_mutation_handles_nested_and_raw_arguments():
    assert contains_mutation(json.dumps({"batch": [{"q": "MUTATION { x }"}]}))
    assert contains_mutation("mutation { x }")
