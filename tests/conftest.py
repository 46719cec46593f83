"""Pytest configuration and shared fakes for the test suite.

No test talks to a real cluster. ``FakeWorld`` stands in for every external
command at the subprocess seam, so the providers' own argument building,
error mapping and masking are exercised unchanged.
"""

from __future__ import annotations

import base64
import io
import ipaddress
import json
import subprocess
import types
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from trustboot.config import AppConfig, load_config
from trustboot.logging import OperationScope, StructuredLogger
from trustboot.pipeline import PipelineContext, Providers
from trustboot.providers import base as runner_module
from trustboot.templates import TemplateEngine

CLUSTER_CA_PEM = "-----BEGIN CERTIFICATE-----\nQ0xVU1RFUi1DQQ==\n-----END CERTIFICATE-----\n"
BROKER_POD = "conjur-oss-7d9f8c6b5-x2x4q"
DATA_KEY = "generated-data-key="
FIRST_API_KEY = "3k1m9vxv0a8cx2y7q1h5f2bqz"


def make_certificate(
    *,
    dns_names: Sequence[str] = ("conjur.myorg.com",),
    ip_addresses: Sequence[str] = (),
    common_name: str = "conjur.myorg.com",
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
) -> bytes:
    """Return a self-signed PEM certificate with the given SAN entries."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from or (now - timedelta(days=1)))
        .not_valid_after(valid_to or (now + timedelta(days=365)))
    )
    names: list[x509.GeneralName] = [x509.DNSName(name) for name in dns_names]
    names.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses)
    if names:
        builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
    cert = builder.sign(key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def broker_cert_pem() -> bytes:
    """Return the certificate the fake broker serves."""
    return make_certificate(dns_names=("conjur.myorg.com", "conjur-oss.conjur-system.svc.cluster.local"))


class FakeClock:
    """Deterministic replacement for ``time.monotonic``/``time.sleep``."""

    def __init__(self) -> None:
        """Start at zero."""
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        """Return the current fake time."""
        return self.now

    def sleep(self, seconds: float) -> None:
        """Advance the fake time."""
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProcess:
    """Stand-in for the ``kubectl port-forward`` background process."""

    def __init__(self, args: Sequence[str], *, exit_code: int | None = None) -> None:
        """Create a process that is running unless *exit_code* is given."""
        self.args = list(args)
        self.pid = 4_194_000 + len(args)
        self.returncode = exit_code
        self.terminated = False

    def poll(self) -> int | None:
        """Return the exit code, or ``None`` while running."""
        return self.returncode

    def terminate(self) -> None:
        """Stop the process."""
        self.terminated = True
        self.returncode = -15

    def kill(self) -> None:
        """Kill the process."""
        self.terminate()

    def wait(self, timeout: float | None = None) -> int:
        """Return the exit code."""
        return self.returncode if self.returncode is not None else 0

    @property
    def alive(self) -> bool:
        """Return ``True`` while the process runs."""
        return self.returncode is None


class FakePod:
    """A broker pod as reported by ``kubectl get pod -o json``."""

    def __init__(self, name: str, *, ready: bool = True) -> None:
        """Create a pod that is Ready unless told otherwise."""
        self.name = name
        self.ready = ready
        self.deleting = False

    def to_item(self) -> dict[str, object]:
        """Return the pod as a kubectl list item."""
        metadata: dict[str, object] = {"name": self.name}
        if self.deleting:
            metadata["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        condition = {"type": "Ready", "status": "True" if self.ready else "False"}
        return {"metadata": metadata, "status": {"conditions": [condition]}}


class FakeWorld:
    """In-memory kind/kubectl/helm/conjur/docker used behind ``subprocess``."""

    def __init__(self, cert_pem: bytes) -> None:
        """Start with no cluster and nothing installed."""
        self.cert_pem = cert_pem
        self.commands: list[list[str]] = []
        self.clusters: set[str] = set()
        self.namespaces: set[str] = set()
        self.releases: dict[tuple[str, str], dict[str, object]] = {}
        self.manifests: list[tuple[str | None, str]] = []
        self.deleted: list[str] = []
        self.account_exists = False
        self.chart_creates_account = False
        self.api_key = FIRST_API_KEY
        self.broker_pods_appear = True
        self.broker_pods: list[FakePod] = []
        self.timeouts: set[str] = set()
        self.conjur_url: str | None = None
        self.conjur_account: str | None = None
        self.logged_in: str | None = None
        self.policies: list[tuple[str, str]] = []
        self.policy_error: str | None = None
        self.variables: dict[str, str] = {}
        self.delivered: dict[str, str] = {}
        self.stale_delivery = False
        self.tokens: list[tuple[str, str, str | None]] = []
        self.missing: set[str] = set()
        self.processes: list[FakeProcess] = []
        self.tunnel_exit: tuple[int, str] | None = None
        self.pgrep_pids: list[int] = []
        self.versions: dict[str, str] = {
            "kind": "kind v0.23.0 go1.22.2 linux/amd64",
            "kubectl": "Client Version: v1.30.2\nKustomize Version: v5.0.4",
            "helm": "v3.15.2+g1a500d5",
            "conjur": "Conjur CLI version 8.0.1",
            "docker": "Docker version 26.1.4, build 5650f9b",
        }
        self._failures: list[tuple[str, int, str]] = []

    # ------------------------------------------------------------------
    # Test controls
    def fail_next(self, prefix: str, stderr: str, *, rc: int = 1) -> None:
        """Make the next command whose normalised text starts with *prefix* fail."""
        self._failures.append((prefix, rc, stderr))

    def ran(self, prefix: str) -> list[list[str]]:
        """Return the recorded commands whose normalised text starts with *prefix*."""
        return [argv for argv in self.commands if _normalise(argv).startswith(prefix)]

    def which(self, binary: str) -> str | None:
        """Resolve *binary* unless marked missing."""
        return None if binary in self.missing else f"/usr/local/bin/{binary}"

    @property
    def tunnel_open(self) -> bool:
        """Return ``True`` while a port-forward process runs."""
        return any(process.alive for process in self.processes)

    def install(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Route the command runner's subprocess calls to this world."""
        fake_subprocess = types.SimpleNamespace(
            run=self.run,
            Popen=self.popen,
            CompletedProcess=subprocess.CompletedProcess,
            DEVNULL=subprocess.DEVNULL,
            PIPE=subprocess.PIPE,
            TimeoutExpired=subprocess.TimeoutExpired,
        )
        monkeypatch.setattr(runner_module, "subprocess", fake_subprocess)
        monkeypatch.setattr("trustboot.bootstrap.prereqs.shutil.which", self.which)

    # ------------------------------------------------------------------
    # subprocess surface
    def run(self, args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        """Dispatch one command."""
        argv = [str(arg) for arg in args]
        self.commands.append(argv)
        tool = Path(argv[0]).name
        if tool in self.missing:
            raise FileNotFoundError(argv[0])
        text = _normalise(argv)
        for index, (prefix, rc, stderr) in enumerate(self._failures):
            if text.startswith(prefix):
                del self._failures[index]
                return _result(argv, rc, stderr=stderr)
        handler = getattr(self, f"_{tool}", None)
        if handler is None:
            raise FileNotFoundError(argv[0])
        input_text = kwargs.get("input")
        return handler(argv, _strip_context(argv[1:]), input_text)

    def popen(self, args: Sequence[str], **kwargs: object) -> FakeProcess:
        """Start a fake background process."""
        argv = [str(arg) for arg in args]
        self.commands.append(argv)
        if Path(argv[0]).name in self.missing:
            raise FileNotFoundError(argv[0])
        if self.tunnel_exit is not None:
            rc, stderr = self.tunnel_exit
            log = kwargs.get("stderr")
            if isinstance(log, io.TextIOBase):
                log.write(stderr)
            process = FakeProcess(argv, exit_code=rc)
        else:
            process = FakeProcess(argv)
        self.processes.append(process)
        return process

    # ------------------------------------------------------------------
    # Tools
    def _kind(self, argv: list[str], args: list[str], _input: object) -> subprocess.CompletedProcess[str]:
        if args[:1] == ["version"]:
            return _result(argv, 0, self.versions["kind"])
        if args[:2] == ["get", "clusters"]:
            if not self.clusters:
                return _result(argv, 0, stderr="No kind clusters found.")
            return _result(argv, 0, "\n".join(sorted(self.clusters)) + "\n")
        if args[:2] == ["create", "cluster"]:
            name = _option(args, "--name")
            if name in self.clusters:
                return _result(argv, 1, stderr=f'node(s) already exist for a cluster with the name "{name}"')
            self.clusters.add(name)
            self.namespaces.update({"default", "kube-system"})
            return _result(argv, 0)
        if args[:2] == ["delete", "cluster"]:
            self.clusters.discard(_option(args, "--name"))
            if not self.clusters:
                self.namespaces.clear()
                self.releases.clear()
                self.broker_pods.clear()
            return _result(argv, 0)
        raise AssertionError(f"unexpected kind call: {argv}")

    def _kubectl(
        self, argv: list[str], args: list[str], input_text: object
    ) -> subprocess.CompletedProcess[str]:
        if args[:2] == ["version", "--client"]:
            return _result(argv, 0, self.versions["kubectl"])
        if not self.clusters:
            return _result(argv, 1, stderr="The connection to the server localhost:8080 was refused")
        namespace = None
        if args[:1] == ["-n"]:
            namespace, args = args[1], args[2:]
        verb = args[0]
        if verb == "cluster-info":
            return _result(argv, 0, "Kubernetes control plane is running at https://127.0.0.1:6443")
        if args[:2] == ["config", "view"]:
            encoded = base64.b64encode(CLUSTER_CA_PEM.encode()).decode()
            view = {
                "clusters": [
                    {
                        "name": "kind-conjur-poc",
                        "cluster": {
                            "server": "https://127.0.0.1:6443",
                            "certificate-authority-data": encoded,
                        },
                    }
                ]
            }
            return _result(argv, 0, json.dumps(view))
        if args[:2] == ["get", "namespace"]:
            return _result(argv, 0, f"namespace/{args[2]}" if args[2] in self.namespaces else "")
        if args[:2] == ["create", "namespace"]:
            self.namespaces.add(args[2])
            return _result(argv, 0, f"namespace/{args[2]} created")
        if verb == "apply":
            self.manifests.append((namespace, str(input_text or "")))
            return _result(argv, 0, "configured")
        if verb == "delete":
            self.deleted.append(args[1])
            return _result(argv, 0)
        if args[:2] == ["get", "pod"]:
            items = [pod.to_item() for pod in self._broker_pods(namespace)]
            return _result(argv, 0, json.dumps({"items": items}))
        if args[:2] == ["rollout", "status"]:
            return self._rollout(argv, namespace, args[2])
        if verb == "wait":
            target = args[1]
            if target in self.timeouts:
                return _result(argv, 1, stderr="error: timed out waiting for the condition")
            return _result(argv, 0, "condition met")
        if verb == "exec":
            return self._exec(argv, namespace, args)
        if args[:2] == ["create", "token"]:
            audience = next(
                (arg.split("=", 1)[1] for arg in args if arg.startswith("--audience=")), None
            )
            self.tokens.append((namespace or "", args[2], audience))
            return _result(argv, 0, f"eyJhbGciOi.token-{len(self.tokens)}\n")
        if args[:2] == ["get", "secret"]:
            return self._secrets(argv, namespace, args)
        raise AssertionError(f"unexpected kubectl call: {argv}")

    def _broker_pods(self, namespace: str | None) -> list[FakePod]:
        if not self.broker_pods_appear or (namespace, "conjur-oss") not in self.releases:
            return []
        if not self.broker_pods:
            self.broker_pods.append(FakePod(BROKER_POD))
        return self.broker_pods

    def _replace_broker_pod(self, namespace: str) -> None:
        # A changed pod template starts a new pod; the old one terminates.
        for pod in self._broker_pods(namespace):
            pod.deleting = True
        self.broker_pods.append(FakePod(f"conjur-oss-5b8c7d9e4-r{len(self.broker_pods)}", ready=False))

    def _rollout(
        self, argv: list[str], namespace: str | None, target: str
    ) -> subprocess.CompletedProcess[str]:
        if target in self.timeouts or not self._broker_pods(namespace):
            return _result(argv, 1, stderr="error: timed out waiting for the condition")
        for pod in self.broker_pods:
            if not pod.deleting:
                pod.ready = True
        return _result(argv, 0, f'deployment "{target.split("/", 1)[1]}" successfully rolled out')

    def _exec(
        self, argv: list[str], namespace: str | None, args: list[str]
    ) -> subprocess.CompletedProcess[str]:
        pod = args[1]
        command = args[args.index("--") + 1 :]
        state = next((item for item in self.broker_pods if item.name == pod), None)
        if state is not None and (state.deleting or not state.ready):
            return _result(
                argv, 1, stderr='error: unable to upgrade connection: container not found ("conjur-oss")'
            )
        if command[:3] == ["conjurctl", "account", "create"]:
            if self.account_exists:
                return _result(argv, 1, stderr=f"error: account '{command[3]}' already exists")
            self.account_exists = True
            return _result(
                argv,
                0,
                f"Created new account '{command[3]}'\nToken-Signing Public Key: ...\n"
                f"API key for admin: {self.api_key}\n",
            )
        if command[:3] == ["conjurctl", "role", "retrieve-key"]:
            if not self.account_exists:
                return _result(argv, 1, stderr="role does not exist")
            return _result(argv, 0, f"{self.api_key}\n")
        if command[:1] == ["cat"] and pod == "demo":
            relative = command[1].removeprefix("/conjur/secrets/")
            value = self.delivered.get(f"app/{relative}")
            if value is None:
                return _result(argv, 1, stderr=f"cat: can't open '{command[1]}': No such file or directory")
            return _result(argv, 0, value)
        raise AssertionError(f"unexpected exec in {namespace}: {argv}")

    def _secrets(
        self, argv: list[str], namespace: str | None, args: list[str]
    ) -> subprocess.CompletedProcess[str]:
        installed = (namespace, "conjur-oss") in self.releases
        names = ["conjur-oss-conjur-ssl-ca-cert", "conjur-oss-conjur-ssl-cert"] if installed else []
        names.append("default-token")
        if args[2] == "-o":
            return _result(argv, 0, json.dumps({"items": [{"metadata": {"name": n}} for n in names]}))
        name = args[2]
        if name not in names:
            return _result(argv, 1, stderr=f'Error from server (NotFound): secrets "{name}" not found')
        encoded = base64.b64encode(self.cert_pem).decode()
        return _result(argv, 0, json.dumps({"data": {"tls.crt": encoded}}))

    def _helm(self, argv: list[str], args: list[str], _input: object) -> subprocess.CompletedProcess[str]:
        args = _strip_option(args, "--kube-context")
        verb = args[0]
        if verb == "version":
            return _result(argv, 0, self.versions["helm"])
        if verb == "repo":
            return _result(argv, 0)
        if not self.clusters:
            return _result(argv, 1, stderr="Error: Kubernetes cluster unreachable")
        if verb == "list":
            namespace = _option(args, "-n")
            names = [{"name": rel} for (ns, rel) in self.releases if ns == namespace]
            return _result(argv, 0, json.dumps(names))
        release, namespace = args[1], _option(args, "--namespace")
        if verb == "uninstall":
            if self.releases.pop((namespace, release), None) is None:
                return _result(argv, 1, stderr=f"Error: uninstall: Release not loaded: {release}: release: not found")
            return _result(argv, 0)
        values, files = _set_values(args)
        key = (namespace, release)
        previous = self.releases.get(key, {}).get("values")
        if verb == "install":
            if key in self.releases:
                return _result(argv, 1, stderr="Error: INSTALLATION FAILED: cannot re-use a name that is still in use")
        elif verb == "upgrade":
            if key not in self.releases and "--install" not in args:
                return _result(argv, 1, stderr=f'Error: UPGRADE FAILED: "{release}" has no deployed releases')
            if "--reuse-values" in args and key in self.releases:
                merged = dict(self.releases[key]["values"])  # type: ignore[arg-type]
                merged.update(values)
                values = merged
        else:
            raise AssertionError(f"unexpected helm call: {argv}")
        self.namespaces.add(namespace)
        self.releases[key] = {"chart": args[2], "values": values, "files": files}
        restarted = verb == "upgrade" and previous is not None and previous != values
        if release == "conjur-oss" and restarted:
            self._replace_broker_pod(namespace)
        if release == "conjur-oss" and self.chart_creates_account and values.get("account.create") == "true":
            self.account_exists = True
        if args[2].endswith(("secrets-provider", "conjur-authn-k8s-client")):
            # Delivery happens when the workload-side component runs.
            self.delivered = dict(self.variables)
            if self.stale_delivery:
                self.delivered = {key: "stale" for key in self.variables}
        return _result(argv, 0)

    def _conjur(self, argv: list[str], args: list[str], _input: object) -> subprocess.CompletedProcess[str]:
        if args[:1] == ["--version"]:
            return _result(argv, 0, self.versions["conjur"])
        verb = args[0]
        if verb == "init":
            self.conjur_url = _option(args, "-u")
            self.conjur_account = _option(args, "-a")
            self.logged_in = None
            return _result(argv, 0, "Wrote configuration to /root/.conjurrc")
        if not self.tunnel_open:
            return _result(argv, 1, stderr=f"Error: dial tcp {self.conjur_url}: connection refused")
        if verb == "login":
            if _option(args, "-p") != self.api_key:
                return _result(argv, 1, stderr="Error: Unable to authenticate with Conjur. 401 Unauthorized")
            self.logged_in = _option(args, "-i")
            return _result(argv, 0, "Logged in")
        if self.logged_in is None:
            return _result(argv, 1, stderr="Error: Please login first")
        if args[:2] == ["policy", "load"]:
            if self.policy_error:
                return _result(argv, 1, stderr=self.policy_error)
            text = Path(_option(args, "-f")).read_text(encoding="utf-8")
            self.policies.append((_option(args, "-b"), text))
            return _result(argv, 0, json.dumps({"created_roles": {}, "version": len(self.policies)}))
        if args[:2] == ["variable", "set"]:
            self.variables[_option(args, "-i")] = _option(args, "-v")
            return _result(argv, 0, "Value added")
        raise AssertionError(f"unexpected conjur call: {argv}")

    def _docker(self, argv: list[str], args: list[str], _input: object) -> subprocess.CompletedProcess[str]:
        if args[:1] == ["--version"]:
            return _result(argv, 0, self.versions["docker"])
        if args[-2:] == ["data-key", "generate"]:
            return _result(argv, 0, f"{DATA_KEY}\n")
        raise AssertionError(f"unexpected docker call: {argv}")

    def _pgrep(self, argv: list[str], args: list[str], _input: object) -> subprocess.CompletedProcess[str]:
        if not self.pgrep_pids:
            return _result(argv, 1)
        return _result(argv, 0, "\n".join(str(pid) for pid in self.pgrep_pids) + "\n")


def _result(argv: list[str], rc: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(argv, returncode=rc, stdout=stdout, stderr=stderr)


def _strip_context(args: list[str]) -> list[str]:
    return _strip_option(args, "--context")


def _strip_option(args: list[str], name: str) -> list[str]:
    result: list[str] = []
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg == name:
            skip = True
            continue
        result.append(arg)
    return result


def _normalise(argv: Sequence[str]) -> str:
    args = _strip_option(_strip_context(list(argv)), "--kube-context")
    return " ".join([Path(args[0]).name, *args[1:]])


def _option(args: Sequence[str], name: str) -> str:
    index = list(args).index(name)
    return args[index + 1]


def _set_values(args: Sequence[str]) -> tuple[dict[str, str], dict[str, str]]:
    values: dict[str, str] = {}
    files: dict[str, str] = {}
    items = list(args)
    for index, arg in enumerate(items):
        if arg == "--set":
            key, _, value = items[index + 1].partition("=")
            values[key] = value
        elif arg == "--set-file":
            key, _, path = items[index + 1].partition("=")
            files[key] = Path(path).read_text(encoding="utf-8")
    return values, files


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

@pytest.fixture
def world(monkeypatch: pytest.MonkeyPatch, broker_cert_pem: bytes) -> FakeWorld:
    """Return a fresh fake world wired in behind the command runner."""
    fake = FakeWorld(broker_cert_pem)
    fake.install(monkeypatch)
    return fake


@pytest.fixture
def clock() -> FakeClock:
    """Return a deterministic clock."""
    return FakeClock()


@pytest.fixture
def templates() -> TemplateEngine:
    """Return the packaged template engine."""
    return TemplateEngine.with_overrides(None)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory for configs rooted under ``tmp_path``."""

    def _make(**overrides: object) -> AppConfig:
        merged: dict[str, object] = {
            "state_dir": str(tmp_path / "state"),
            "export": {"env_file": str(tmp_path / "home" / ".conjur_demo_env")},
        }
        merged.update(overrides)
        return load_config(config_file=tmp_path / "missing.yml", env={}, overrides=merged)

    return _make


@pytest.fixture
def config(make_config: Callable[..., AppConfig]) -> AppConfig:
    """Return the default demo configuration."""
    return make_config()


@pytest.fixture
def make_context(
    world: FakeWorld,
    clock: FakeClock,
    templates: TemplateEngine,
) -> Callable[..., PipelineContext]:
    """Return a factory for pipeline contexts bound to the fake world."""

    def _make(config: AppConfig, **overrides: object) -> PipelineContext:
        settings: dict[str, object] = {
            "config": config,
            "providers": Providers.from_config(config),
            "templates": templates,
            "narrate": lambda message: None,
            "clock": clock,
            "sleep": clock.sleep,
            "resolver": lambda hostname: ["127.0.0.1"],
            "connect": lambda port: True,
        }
        settings.update(overrides)
        return PipelineContext(**settings)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def op(tmp_path: Path) -> OperationScope:
    """Return an operation scope whose record is never written."""
    return OperationScope(StructuredLogger(tmp_path / "logs"), "test")
