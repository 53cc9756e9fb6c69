import logging

import requests

from prober_core.kinds import RunnerErrorKind
from prober_core.probe import ProbeProgram
from prober_core.runner import Runner
from prober_core.settings import TIMEOUT_PER_PROBE
from vm_agent_runner.settings import (
    CONNECT_TIMEOUT,
    DEFAULT_AGENT_URL,
    OUTPUT_PATH,
    PROBE_NAME,
    RUN_GRACE_PERIOD,
    RUN_PATH,
    TIMEOUT_STATUS_CODES,
    TRANSFER_TIMEOUT,
    UPLOAD_PATH,
)

logger = logging.getLogger("fuzzer")


class AgentRunner(Runner):
    """Backend talking HTTP to an agent inside a guest machine.

    Each probe is uploaded, run and its captured stdout downloaded in three
    requests. The agent itself is started outside of this process.
    """

    name = "vm-agent"

    def __init__(
        self,
        base_url: str = DEFAULT_AGENT_URL,
        timeout: float = TIMEOUT_PER_PROBE,
        probe_name: str = PROBE_NAME,
        session: requests.Session | None = None,
    ):
        super().__init__(timeout)
        self.base_url = base_url.rstrip("/")
        self.probe_name = probe_name
        self.session = session
        self._owns_session = session is None

    def _open(self):
        if self.session is None:
            self.session = requests.Session()

    def _close(self):
        if self._owns_session and self.session is not None:
            self.session.close()
            self.session = None

    def url(self, path: str) -> str:
        return self.base_url + path.format(name=self.probe_name)

    def _run(self, probe: ProbeProgram, timeout: float) -> bytes:
        self._request("put", UPLOAD_PATH, data=probe.image, timeout=(CONNECT_TIMEOUT, TRANSFER_TIMEOUT))
        self._request(
            "post",
            RUN_PATH,
            json={"timeout": timeout},
            timeout=(CONNECT_TIMEOUT, timeout + RUN_GRACE_PERIOD),
        )
        response = self._request("get", OUTPUT_PATH, timeout=(CONNECT_TIMEOUT, TRANSFER_TIMEOUT))
        return response.content

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self.url(path)
        logger.debug(f"[{self.name}] {method.upper()} {url}")
        try:
            response = getattr(self.session, method)(url, **kwargs)
        except requests.ConnectTimeout as e:
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"connecting to {url} timed out") from e
        except requests.Timeout as e:
            raise self._error(RunnerErrorKind.EXECUTION_TIMEOUT, f"{method.upper()} {url} timed out") from e
        except requests.ConnectionError as e:
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"cannot reach {url}: {e}") from e

        if response.status_code in TIMEOUT_STATUS_CODES:
            raise self._error(RunnerErrorKind.EXECUTION_TIMEOUT, f"agent reports a timeout for {url}")
        if response.status_code == 404 and path == OUTPUT_PATH:
            raise self._error(RunnerErrorKind.MALFORMED_OUTPUT, "agent has no output for the probe")
        if not response.ok:
            raise self._error(
                RunnerErrorKind.BACKEND_FATAL,
                f"{method.upper()} {url} failed with {response.status_code}: {response.text[:200]}",
            )
        return response
