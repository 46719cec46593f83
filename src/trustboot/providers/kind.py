"""Provider wrapping the ``kind`` CLI for local cluster lifecycle."""
from __future__ import annotations

from dataclasses import dataclass, field

from .base import CommandRunner


@dataclass(slots=True)
class KindProvider:
    """List, create and delete kind clusters."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    binary: str = "kind"

    def list_clusters(self) -> list[str]:
        """Return the names of existing clusters."""
        result = self.runner.run(
            [self.binary, "get", "clusters"],
            error_prefix=f"{self.binary} get clusters",
        )
        names: list[str] = []
        for line in (result.stdout or "").splitlines():
            name = line.strip()
            # kind prints this notice on stdout/stderr depending on version.
            if name and not name.lower().startswith("no kind clusters"):
                names.append(name)
        return names

    def cluster_exists(self, name: str) -> bool:
        """Return ``True`` when a cluster named exactly *name* exists."""
        return name in self.list_clusters()

    def create_cluster(self, name: str, *, node_image: str, wait_seconds: float) -> None:
        """Create *name* and block until its control plane is ready."""
        self.runner.run(
            [
                self.binary,
                "create",
                "cluster",
                "--name",
                name,
                "--image",
                node_image,
                "--wait",
                f"{int(wait_seconds)}s",
            ],
            error_prefix=f"{self.binary} create cluster {name}",
        )

    def delete_cluster(self, name: str) -> None:
        """Delete the cluster named *name*."""
        self.runner.run(
            [self.binary, "delete", "cluster", "--name", name],
            error_prefix=f"{self.binary} delete cluster {name}",
        )


__all__ = ["KindProvider"]
