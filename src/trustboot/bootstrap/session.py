"""Session establisher: tunnel to the broker and authenticate the admin CLI.

The broker certificate is bound to a hostname, so the operator reaches the
broker through a local port-forward addressed by that hostname (mapped to a
loopback address). A session is only valid for the hostname it was created
with; asking for a different one forces re-establishment.
"""
from __future__ import annotations

import ipaddress
import logging
import os
import re
import signal
import socket
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from types import TracebackType

from ..errors import CommandFailed, ExternalToolMissing, ValidationError
from ..models import AdminCredential, BrokerEndpoint, Session
from ..providers.base import CommandRunner
from ..providers.conjur import ConjurCLI
from ..providers.kubectl import KubectlProvider
from ..tls import BrokerCertificate, inspect_certificate, require_hostname
from ..waiting import wait_for

LOGGER = logging.getLogger(__name__)

TLS_SECRET_KEY = "tls.crt"

Resolver = Callable[[str], list[str]]


# ----------------------------------------------------------------------
# Certificate and name checks
# ----------------------------------------------------------------------

def find_tls_secret(
    kubectl: KubectlProvider,
    namespace: str,
    release: str,
    *,
    prefer_ca: bool = False,
) -> str:
    """Return the name of the release's TLS secret.

    With *prefer_ca* the CA secret (``<release>-conjur-ssl-ca-cert``) wins
    over the server certificate secret when both exist.
    """
    pattern = re.compile(rf"^{re.escape(release)}-conjur-ssl-(ca-)?cert$")
    matches = sorted(name for name in kubectl.secret_names(namespace) if pattern.match(name))
    if not matches:
        raise CommandFailed(
            f"kubectl get secret -n {namespace}",
            0,
            f"no TLS secret matching {pattern.pattern}",
        )
    ca = [name for name in matches if "-ssl-ca-" in name]
    server = [name for name in matches if "-ssl-ca-" not in name]
    ordered = ca + server if prefer_ca else server + ca
    return ordered[0]


def fetch_broker_certificate(
    kubectl: KubectlProvider,
    namespace: str,
    release: str,
) -> BrokerCertificate:
    """Read and parse the certificate the broker serves."""
    secret = find_tls_secret(kubectl, namespace, release)
    return inspect_certificate(kubectl.secret_value(namespace, secret, TLS_SECRET_KEY))


def resolve_host(hostname: str) -> list[str]:
    """Return the addresses *hostname* resolves to."""
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return sorted({str(info[4][0]) for info in infos})


def require_loopback(hostname: str, *, resolver: Resolver = resolve_host) -> list[str]:
    """Ensure *hostname* resolves only to loopback addresses."""
    hint = f"Map it to the tunnel, e.g. add '127.0.0.1  {hostname}' to /etc/hosts."
    try:
        addresses = resolver(hostname)
    except OSError as exc:
        raise ValidationError(f"Hostname '{hostname}' does not resolve ({exc}). {hint}") from exc
    if not addresses:
        raise ValidationError(f"Hostname '{hostname}' does not resolve. {hint}")
    remote = [addr for addr in addresses if not ipaddress.ip_address(addr.split("%")[0]).is_loopback]
    if remote:
        raise ValidationError(
            f"Hostname '{hostname}' resolves to non-loopback address(es) "
            f"{', '.join(remote)}. {hint}"
        )
    return addresses


# ----------------------------------------------------------------------
# Tunnel
# ----------------------------------------------------------------------

class Tunnel:
    """A ``kubectl port-forward`` owned for the duration of a ``with`` block."""

    def __init__(
        self,
        kubectl: KubectlProvider,
        *,
        namespace: str,
        service: str,
        local_port: int,
        remote_port: int,
        pidfile: Path,
        ready_timeout: float,
        runner: CommandRunner | None = None,
        connect: Callable[[int], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Describe the tunnel; nothing is started until :meth:`open`."""
        self.kubectl = kubectl
        self.namespace = namespace
        self.service = service
        self.local_port = local_port
        self.remote_port = remote_port
        self.pidfile = pidfile
        self.logfile = pidfile.with_suffix(".log")
        self.ready_timeout = ready_timeout
        self.runner = runner or CommandRunner()
        self._connect = connect or _can_connect
        self._clock = clock
        self._sleep = sleep
        self.process: subprocess.Popen[str] | None = None

    @property
    def port_mapping(self) -> str:
        """Return the ``local:remote`` mapping string."""
        return f"{self.local_port}:{self.remote_port}"

    def __enter__(self) -> Tunnel:
        """Open the tunnel."""
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the tunnel whether or not the block failed."""
        self.close()

    def open(self) -> None:
        """Terminate stale tunnels, start a new one and wait until it accepts connections."""
        self.terminate_stale()
        self.process = self.kubectl.port_forward(
            self.namespace,
            self.service,
            local_port=self.local_port,
            remote_port=self.remote_port,
            log_path=self.logfile,
        )
        self.pidfile.parent.mkdir(parents=True, exist_ok=True)
        self.pidfile.write_text(f"{self.process.pid}\n", encoding="utf-8")
        try:
            wait_for(
                self._ready,
                timeout=self.ready_timeout,
                description=f"port-forward svc/{self.service} {self.port_mapping}",
                clock=self._clock,
                sleep=self._sleep,
            )
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        """Stop the tunnel process and forget its pid."""
        process, self.process = self.process, None
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=5)
        self.pidfile.unlink(missing_ok=True)

    def terminate_stale(self) -> list[int]:
        """Terminate tunnels left by earlier runs; return the pids signalled."""
        stopped: list[int] = []
        recorded = _read_pid(self.pidfile)
        if recorded is not None and _is_port_forward(recorded) and _signal(recorded):
            stopped.append(recorded)
        self.pidfile.unlink(missing_ok=True)
        for pid in self._matching_pids():
            if pid not in stopped and pid != os.getpid() and _signal(pid):
                stopped.append(pid)
        if stopped:
            LOGGER.info("Stopped stale port-forward process(es): %s", stopped)
        return stopped

    # ------------------------------------------------------------------
    def _matching_pids(self) -> list[int]:
        pattern = f"{self.kubectl.binary} .*port-forward.*{self.port_mapping}"
        try:
            result = self.runner.run(["pgrep", "-f", pattern], check=False)
        except ExternalToolMissing:
            LOGGER.warning("pgrep not available; skipping stale port-forward scan")
            return []
        pids: list[int] = []
        for line in (result.stdout or "").splitlines():
            line = line.strip()
            if line.isdigit():
                pids.append(int(line))
        return pids

    def _ready(self) -> bool:
        process = self.process
        if process is None:
            return False
        returncode = process.poll()
        if returncode is not None:
            raise CommandFailed(
                f"kubectl port-forward svc/{self.service} {self.port_mapping}",
                returncode,
                _tail(self.logfile),
            )
        return self._connect(self.local_port)


def _can_connect(port: int) -> bool:
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=1.0):
            return True
    except OSError:
        return False


def _tail(path: Path, lines: int = 20) -> str:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ""
    return "\n".join(text.strip().splitlines()[-lines:])


def _read_pid(path: Path) -> int | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return int(text) if text.isdigit() else None


def _is_port_forward(pid: int) -> bool:
    cmdline = Path(f"/proc/{pid}/cmdline")
    try:
        argv = cmdline.read_bytes().split(b"\0")
    except FileNotFoundError:
        return False
    except OSError:
        # No procfs to inspect; trust the pidfile.
        return True
    return b"port-forward" in argv


def _signal(pid: int) -> bool:
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except PermissionError:
        LOGGER.warning("Not permitted to stop process %s", pid)
        return False
    return True


# ----------------------------------------------------------------------
# Authentication
# ----------------------------------------------------------------------

def establish_session(
    conjur: ConjurCLI,
    endpoint: BrokerEndpoint,
    credential: AdminCredential,
    *,
    certificate: BrokerCertificate | None = None,
) -> Session:
    """Initialise the CLI against *endpoint* and log in with *credential*.

    When *certificate* is given the endpoint hostname must be one of its
    subject alternative names; otherwise nothing is sent to the broker.
    """
    if certificate is not None:
        require_hostname(certificate, endpoint.hostname)
    conjur.init(endpoint.url, endpoint.account, self_signed=True)
    conjur.login(credential.identity, credential.api_key)
    LOGGER.info("Authenticated to %s as %s", endpoint.url, credential.identity)
    return Session(
        endpoint=endpoint,
        account=endpoint.account,
        hostname=endpoint.hostname,
        identity=credential.identity,
    )


class SessionManager:
    """Hold the active session and re-establish it when the hostname changes."""

    def __init__(self, conjur: ConjurCLI) -> None:
        """Start without a session."""
        self.conjur = conjur
        self.current: Session | None = None

    def ensure(
        self,
        endpoint: BrokerEndpoint,
        credential: AdminCredential,
        *,
        certificate: BrokerCertificate | None = None,
    ) -> Session:
        """Return a session valid for *endpoint*, establishing one if needed."""
        current = self.current
        if (
            current is not None
            and current.matches(endpoint.hostname)
            and current.account == endpoint.account
            and current.identity == credential.identity
        ):
            return current
        self.current = None
        self.current = establish_session(
            self.conjur, endpoint, credential, certificate=certificate
        )
        return self.current

    def invalidate(self) -> None:
        """Forget the active session."""
        self.current = None


__all__ = [
    "SessionManager",
    "Tunnel",
    "establish_session",
    "fetch_broker_certificate",
    "find_tls_secret",
    "require_loopback",
    "resolve_host",
]
