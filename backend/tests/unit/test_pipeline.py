"""Unit tests for the admission pipeline stages."""

import asyncio

import pytest

from wedly_shared.config import Settings
from wedly_shared.models.context import RequestContext
from wedly_shared.models.errors import AppError, ErrorCategory
from wedly_shared.services.security_gate import SecurityGate

from wedly_api.pipeline import Pipeline, PipelineCall, read_body_stage


class ChunkedRequest:
    """Request stand-in that streams a body without Content-Length."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.headers: dict[str, str] = {}
        self._chunks = chunks
        self.chunks_read = 0

    async def stream(self):
        for chunk in self._chunks:
            self.chunks_read += 1
            yield chunk


@pytest.fixture
def gate() -> SecurityGate:
    return SecurityGate(Settings(max_request_bytes=10))


def _call(request: ChunkedRequest) -> PipelineCall:
    return PipelineCall(request=request, context=RequestContext(request_id="req-1"))


class TestReadBody:
    def test_joins_chunks(self, gate):
        call = _call(ChunkedRequest([b"abc", b"def"]))

        asyncio.run(Pipeline(read_body_stage(gate)).run(call))

        assert call.body == b"abcdef"

    def test_stops_reading_once_over_limit(self, gate):
        request = ChunkedRequest([b"x" * 6] * 5)
        call = _call(request)

        with pytest.raises(AppError) as exc_info:
            asyncio.run(Pipeline(read_body_stage(gate)).run(call))

        assert exc_info.value.http_status == 413
        assert request.chunks_read == 2
        assert call.body == b""

    def test_body_at_limit_is_accepted(self, gate):
        call = _call(ChunkedRequest([b"x" * 4, b"x" * 6]))

        asyncio.run(Pipeline(read_body_stage(gate)).run(call))

        assert len(call.body) == 10


class TestStageResults:
    def test_missing_event_is_internal_error(self):
        with pytest.raises(AppError) as exc_info:
            _call(ChunkedRequest([])).verified_event()

        assert exc_info.value.category is ErrorCategory.INTERNAL
        assert exc_info.value.http_status == 500

    def test_missing_identity_is_internal_error(self):
        with pytest.raises(AppError) as exc_info:
            _call(ChunkedRequest([])).verified_identity()

        assert exc_info.value.http_status == 500
