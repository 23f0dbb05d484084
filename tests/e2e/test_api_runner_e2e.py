import json
import random

import pytest
import pytest_asyncio

from api_runner import (
    ApiRunner,
    FailureKind,
    Metrics,
    PipelineDefinition,
    PipelineStatus,
    RunnerConfig,
    run_pipeline_blocking,
)
from entry_saver import InMemoryEntrySink
from tests.e2e.mock_server import create_mock_server, shutdown_mock_server


@pytest_asyncio.fixture
async def mock_server():
    runner, base_url, hits, requests = await create_mock_server()
    yield {'base_url': base_url, 'hits': hits, 'requests': requests}
    await shutdown_mock_server(runner)


def make_runner(base_url: str, pipeline: dict, **kwargs) -> ApiRunner:
    config = RunnerConfig(url=base_url, api_key="k3y", request_timeout_s=5, connect_timeout_s=2)
    return ApiRunner(config, PipelineDefinition.model_validate(pipeline), Metrics(), rng=random.Random(0), **kwargs)


@pytest.mark.asyncio
async def test_values_flow_into_later_commands(mock_server):
    pipeline = {
        "name": "items",
        "variables": {"role": "author"},
        "commands": [
            {"id": "list", "endpoint": "items", "targets": [{"var": "id", "path": "items.id"}]},
            {
                "id": "detail",
                "endpoint": "items/{$id}",
                "parameters": {"view": "full"},
                "filter": {"key": "reviewers.role", "value": "$role"},
                "targets": [{"var": "author", "path": "reviewers.name"}],
            },
        ],
        "save": [
            {"type": "metadata", "name": "dc.contributor", "value": "$author", "choice": "each"},
            {"type": "property", "name": "ids", "value": "$id", "choice": ":|"},
        ],
    }
    runner = make_runner(mock_server['base_url'], pipeline)
    result = await runner.run()

    assert result.status == PipelineStatus.SUCCESS
    assert result.outcomes[1].endpoints == ["items/7", "items/9"]
    assert mock_server['hits'] == {'/items': 1, '/items/7': 1, '/items/9': 1}

    detail_request = mock_server['requests'][1]
    assert detail_request['query'] == {'view': 'full', 'apikey': 'k3y'}
    assert detail_request['headers']['Accept'] == 'application/json'

    # the second endpoint's response overwrites the first one's values
    assert result.variables["{$author}"] == ["Cid"]
    assert runner.sink.metadata == {"dc.contributor": ["Cid"]}
    assert runner.sink.properties == {"ids": ["7|9"]}
    assert await runner.metrics.get_request_count() == 3


@pytest.mark.asyncio
async def test_post_body_substitution_and_update(mock_server):
    pipeline = {
        "name": "echo",
        "variables": {"id": ["7", "9"], "status": "closed"},
        "commands": [{
            "id": "post",
            "method": "POST",
            "endpoint": "echo",
            "body": {"type": "json", "content": '{"id": "{$id}", "state": "open"}', "wrapper": "item"},
            "targets": [{"var": "echoed", "path": "item.id"}],
            "update": {"var": "record", "entries": [{"path": "item.state", "value": "$status"}]},
        }],
        "save": [{"type": "group", "name": "records", "value": "$record", "fields": {"state": "item.state"}}],
    }
    runner = make_runner(mock_server['base_url'], pipeline)
    result = await runner.run()

    assert result.status == PipelineStatus.SUCCESS
    sent = mock_server['requests'][0]
    assert sent['method'] == 'POST'
    assert sent['headers']['Content-Type'] == 'application/json'
    assert json.loads(sent['body']) == {"item": {"id": "7", "state": "open"}}

    assert result.variables["{$echoed}"] == ["7"]
    assert result.variables["{$record}"] == [{"item": {"id": "7", "state": "closed"}}]
    assert runner.sink.groups == [{"name": "records", "fields": {"state": ["closed"]}}]


@pytest.mark.asyncio
async def test_parse_error_skips_endpoint_only(mock_server):
    pipeline = {
        "name": "broken",
        "commands": [
            {"id": "bad", "endpoint": "broken", "targets": [{"var": "x", "path": "unterminated"}]},
            {"id": "good", "endpoint": "items", "targets": [{"var": "id", "path": "items.id"}]},
        ],
    }
    result = await make_runner(mock_server['base_url'], pipeline).run()

    assert result.status == PipelineStatus.SUCCESS
    assert result.outcomes[0].responses == 0
    assert result.outcomes[0].errors[0].startswith("parse")
    assert result.variables["{$id}"] == ["7", "9"]


@pytest.mark.asyncio
async def test_xml_responses_are_not_queried(mock_server):
    pipeline = {"commands": [{"endpoint": "xml", "accept": "xml", "targets": [{"var": "id", "path": "item.id"}]}]}
    result = await make_runner(mock_server['base_url'], pipeline).run()

    assert result.status == PipelineStatus.SUCCESS
    assert mock_server['requests'][0]['headers']['Accept'] == 'application/xml'
    assert result.outcomes[0].responses == 0
    assert "{$id}" not in result.variables


@pytest.mark.asyncio
async def test_unknown_variable_skips_command_and_pipeline_succeeds(mock_server):
    pipeline = {
        "commands": [
            {"id": "a", "endpoint": "items/{$nope}"},
            {"id": "b", "endpoint": "items"},
        ],
        "save": [{"type": "property", "name": "p", "value": "$nope", "choice": "first"}],
    }
    journal = []
    runner = make_runner(mock_server['base_url'], pipeline, on_journal=lambda level, message: journal.append(level))
    result = await runner.run()

    assert result.status == PipelineStatus.SUCCESS
    assert result.outcomes[0].failure == FailureKind.RESOLUTION
    assert result.outcomes[1].succeeded
    assert mock_server['hits'] == {'/items': 1}
    assert runner.sink.properties == {"p": ["$nope"]}
    assert "ERROR" in journal


@pytest.mark.asyncio
async def test_configured_content_type_wins_for_requests_with_body(mock_server):
    pipeline = {
        "commands": [{
            "id": "put",
            "method": "PUT",
            "endpoint": "echo",
            "headers": {"Content-Type": "application/vnd.api+json"},
            "body": {"type": "json", "content": '{"id": "1"}'},
            "targets": [{"var": "id", "path": "id"}],
        }],
    }
    result = await make_runner(mock_server['base_url'], pipeline).run()

    assert result.status == PipelineStatus.SUCCESS
    assert mock_server['requests'][0]['headers']['Content-Type'] == 'application/vnd.api+json'
    assert result.variables["{$id}"] == ["1"]


@pytest.mark.asyncio
async def test_transport_error_is_handled():
    config = RunnerConfig(url="http://127.0.0.1:1", request_timeout_s=2, connect_timeout_s=1)
    pipeline = PipelineDefinition.model_validate({"commands": [{"id": "down", "endpoint": "items"}]})
    metrics = Metrics()
    result = await ApiRunner(config, pipeline, metrics).run()

    assert result.status == PipelineStatus.SUCCESS
    assert result.outcomes[0].errors[0].startswith("transport")
    assert metrics.transport_error_count == 1


def test_run_pipeline_blocking_without_commands():
    sink = InMemoryEntrySink()
    result = run_pipeline_blocking(
        {
            "config": {"URL": "http://127.0.0.1:1"},
            "pipeline": {
                "name": "static",
                "variables": {"title": ["A", "B"]},
                "save": [{"type": "property", "name": "t", "value": "$title", "choice": "last"}],
            },
        },
        sink=sink,
    )
    assert result.succeeded
    assert sink.properties == {"t": ["B"]}
