import pytest
import requests

from prober_core.kinds import RunnerErrorKind
from prober_core.probe import build
from prober_core.runner import RunnerError
from prober_core.snapshot import CpuStateSnapshot, encode_output_block
from prober_core.x86 import Instruction
from vm_agent_runner.runner import AgentRunner

STATE = CpuStateSnapshot(ax=0x0018, bx=0x0002, flags=0x0202)


def make_response(status_code: int, content: bytes = b"") -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response._content = content
    return response


class FakeSession:
    """Records requests and answers them from a per-method script."""

    def __init__(self, **script):
        self.script = script
        self.calls = []
        self.closed = False

    def _handle(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        answer = self.script.get(method, make_response(200))
        if isinstance(answer, Exception):
            raise answer
        return answer

    def put(self, url, **kwargs):
        return self._handle("put", url, **kwargs)

    def post(self, url, **kwargs):
        return self._handle("post", url, **kwargs)

    def get(self, url, **kwargs):
        return self._handle("get", url, **kwargs)

    def close(self):
        self.closed = True


@pytest.fixture
def probe():
    return build([Instruction.from_asm("idiv bl")], {"ax": 0x30, "bx": 0x2})


def run_with(session: FakeSession, probe):
    runner = AgentRunner("http://guest:8420/", timeout=3.0, session=session)
    return runner, runner.execute(probe)


def test_probe_is_uploaded_run_and_collected(probe):
    session = FakeSession(get=make_response(200, b"C:\\>PROBE\r\n" + encode_output_block(STATE)))
    runner, state = run_with(session, probe)

    assert state == STATE
    (put, post, get) = session.calls
    assert put[:2] == ("put", "http://guest:8420/probes/PROBE.COM")
    assert put[2]["data"] == probe.image
    assert post[:2] == ("post", "http://guest:8420/probes/PROBE.COM/run")
    assert post[2]["json"] == {"timeout": 3.0}
    assert post[2]["timeout"][1] > 3.0
    assert get[:2] == ("get", "http://guest:8420/probes/PROBE.COM/output")

    # a session passed in is left for its owner to close
    runner.close()
    assert not session.closed


@pytest.mark.parametrize(
    "script, kind",
    [
        ({"post": make_response(504)}, RunnerErrorKind.EXECUTION_TIMEOUT),
        ({"post": requests.ReadTimeout("read timed out")}, RunnerErrorKind.EXECUTION_TIMEOUT),
        ({"put": requests.ConnectTimeout("connect timed out")}, RunnerErrorKind.CONNECTION_FAILED),
        ({"put": requests.ConnectionError("refused")}, RunnerErrorKind.CONNECTION_FAILED),
        ({"get": make_response(404)}, RunnerErrorKind.MALFORMED_OUTPUT),
        ({"put": make_response(500, b"disk full")}, RunnerErrorKind.BACKEND_FATAL),
        ({"get": make_response(200, b"Bad command or file name")}, RunnerErrorKind.MALFORMED_OUTPUT),
    ],
)
def test_failures_are_classified(probe, script, kind):
    with pytest.raises(RunnerError) as exc_info:
        run_with(FakeSession(**script), probe)
    assert exc_info.value.kind == kind
    assert exc_info.value.backend == "vm-agent"


def test_owned_session_is_created_and_closed(probe):
    runner = AgentRunner()
    runner.open()
    assert isinstance(runner.session, requests.Session)
    runner.close()
    assert runner.session is None
