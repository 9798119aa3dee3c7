"""Build and validation oracle plus the probe that serialises access to it.

:class:`CommandOracle` shells out to the project's own build and dev
server commands. :class:`MetricsProbe` wraps any :class:`Oracle`, allows
one probe at a time and turns every oracle failure, including timeouts and
crashes, into a failed :class:`ProbeOutcome`. The probe never retries.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import shlex
import signal
import socket
import subprocess
import threading
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import DEFAULTS
from .errors import ProbeError
from .results import BuildResult, BundleMetrics, ChunkInfo, ProbeOutcome, RouteResult, ValidationResult
from .source_tree import SourceTree

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIXES = (".js", ".css", ".html")

_ERROR_MARKERS = (
    "error", "cannot resolve", "could not resolve", "module not found",
    "is not exported", "failed to resolve", "cannot find module",
)
_CHUNK_RE = re.compile(
    r"^\s*(?P<path>\S+\.(?:js|css|html))\s+(?P<size>\d+(?:\.\d+)?)\s*(?P<unit>kB|KB|MB|B)\b"
    r"(?:.*?gzip:\s*(?P<gzip>\d+(?:\.\d+)?)\s*kB)?",
    re.MULTILINE,
)
_ROUTE_RE = re.compile(r"<Route\b[^>]*?\bpath=[\"']([^\"']+)[\"']")
_LINK_RE = re.compile(r"<Link\b[^>]*?\b(?:to|href)=[\"']([^\"']+)[\"']")


def parse_error_lines(output: str, limit: int = 20) -> List[str]:
    """Pick lines that look like build errors out of tool output."""
    errors = []
    for line in output.splitlines():
        stripped = line.strip()
        if stripped and any(marker in stripped.lower() for marker in _ERROR_MARKERS):
            errors.append(stripped)
            if len(errors) >= limit:
                break
    return errors


def parse_chunks(output: str) -> List[ChunkInfo]:
    """Parse the asset table Vite prints after a build, largest first."""
    chunks = []
    for match in _CHUNK_RE.finditer(output):
        size = float(match.group("size"))
        unit = match.group("unit")
        if unit == "B":
            size /= 1024
        elif unit == "MB":
            size *= 1024
        name = match.group("path").rsplit("/", 1)[-1]
        gzip = float(match.group("gzip")) if match.group("gzip") else None
        chunks.append(ChunkInfo(name=name, size_kb=round(size, 2), gzip_kb=gzip))
    return sorted(chunks, key=lambda c: c.size_kb, reverse=True)


def measure_artifacts(dist: Path) -> Dict[str, int]:
    """Byte sizes of emitted ``.js``, ``.css`` and ``.html`` files under *dist*."""
    sizes: Dict[str, int] = {}
    if not dist.is_dir():
        return sizes
    for path in sorted(dist.rglob("*")):
        if path.is_file() and path.suffix in ARTIFACT_SUFFIXES:
            sizes[path.relative_to(dist).as_posix()] = path.stat().st_size
    return sizes


def discover_routes(tree: SourceTree) -> List[str]:
    """Static routes declared with ``<Route path>`` or linked with ``<Link to|href>``."""
    routes: List[str] = []
    for rel_path in tree.iter_source_files():
        try:
            content = tree.read(rel_path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Route discovery skipped %s: %s", rel_path, exc)
            continue
        for pattern in (_ROUTE_RE, _LINK_RE):
            for route in pattern.findall(content):
                if route.startswith("/") and ":" not in route and "*" not in route and route not in routes:
                    routes.append(route)
    return routes


def find_free_port(start: int, attempts: int = 100) -> int:
    for port in range(start, start + attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("127.0.0.1", port))
            except OSError:
                continue
            return port
    raise ProbeError(f"No free port in {start}-{start + attempts - 1}")


def stop_process(proc: subprocess.Popen, grace: float = 5.0) -> None:
    """Terminate a child's process group, escalating to SIGKILL."""
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        proc.wait()
        return
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGKILL)
        proc.wait()


def check_route(base_url: str, route: str, timeout: float = 10.0) -> RouteResult:
    """GET one route and require a 2xx HTML response."""
    started = time.time()
    try:
        with urllib.request.urlopen(base_url + route, timeout=timeout) as resp:
            status = resp.status
            body = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        return RouteResult(route=route, success=False, status_code=exc.code,
                           load_time_ms=int((time.time() - started) * 1000), error=str(exc))
    except (urllib.error.URLError, OSError) as exc:
        return RouteResult(route=route, success=False,
                           load_time_ms=int((time.time() - started) * 1000), error=str(exc))

    elapsed = int((time.time() - started) * 1000)
    if not 200 <= status < 300:
        return RouteResult(route=route, success=False, status_code=status, load_time_ms=elapsed,
                           error=f"HTTP {status}")
    lowered = body.lower()
    if "<!doctype html" not in lowered and "<html" not in lowered:
        return RouteResult(route=route, success=False, status_code=status, load_time_ms=elapsed,
                           error="Response does not appear to be valid HTML")
    return RouteResult(route=route, success=True, status_code=status, load_time_ms=elapsed)


# ===================================================================
# Oracle interface
# ===================================================================

class Oracle(ABC):
    """Answers whether the current working tree builds and serves."""

    @abstractmethod
    def build(self, root: Path) -> BuildResult:
        ...

    @abstractmethod
    def validate(self, root: Path) -> ValidationResult:
        ...


class CommandOracle(Oracle):
    """Runs the project's build and dev-server commands."""

    def __init__(
        self,
        build_command: str = DEFAULTS["build_command"],
        serve_command: str = DEFAULTS["serve_command"],
        dist_dir: str = DEFAULTS["dist_dir"],
        routes: Sequence[str] = tuple(DEFAULTS["routes"]),
        discover: bool = DEFAULTS["discover_routes"],
        timeout: int = DEFAULTS["validation_timeout"],
        port: int = DEFAULTS["port"],
        ready_timeout: float = 30.0,
    ):
        self.build_command = build_command
        self.serve_command = serve_command
        self.dist_dir = dist_dir
        self.routes = list(routes)
        self.discover = discover
        self.timeout = timeout
        self.port = port
        self.ready_timeout = ready_timeout

    def _dist(self, root: Path) -> Path:
        preferred = root / self.dist_dir
        if preferred.is_dir():
            return preferred
        return root / "dist"

    def build(self, root: Path) -> BuildResult:
        started = time.time()
        env = {**os.environ, "NODE_ENV": "production"}
        try:
            proc = subprocess.Popen(
                shlex.split(self.build_command),
                cwd=root,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProbeError(f"Cannot run build command '{self.build_command}': {exc}") from exc
        try:
            stdout, stderr = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            # Tear down the whole process group, not just npm
            stop_process(proc)
            raise ProbeError(f"Build timed out after {self.timeout}s") from exc

        output = (stdout or "") + (stderr or "")
        duration = int((time.time() - started) * 1000)
        if proc.returncode != 0:
            errors = parse_error_lines(output) or [f"Build exited with code {proc.returncode}"]
            return BuildResult(success=False, errors=errors, duration_ms=duration, output=output)
        return BuildResult(
            success=True,
            artifact_sizes=measure_artifacts(self._dist(root)),
            chunks=parse_chunks(output),
            duration_ms=duration,
            output=output,
        )

    @contextlib.contextmanager
    def serve(self, root: Path, deadline: Optional[float] = None) -> Iterator[str]:
        """Run the dev server for the duration of the block and yield its base URL.

        Args:
            root: Project root to serve.
            deadline: Absolute ``time.time()`` by which the server must answer.
                Defaults to ``ready_timeout`` from now.
        """
        port = find_free_port(self.port)
        env = {**os.environ, "PORT": str(port)}
        try:
            proc = subprocess.Popen(
                shlex.split(self.serve_command),
                cwd=root,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProbeError(f"Cannot start server '{self.serve_command}': {exc}") from exc

        base_url = f"http://127.0.0.1:{port}"
        try:
            self._wait_ready(proc, base_url, deadline or time.time() + self.ready_timeout)
            yield base_url
        finally:
            stop_process(proc)

    def _wait_ready(self, proc: subprocess.Popen, base_url: str, deadline: float) -> None:
        started = time.time()
        while time.time() < deadline:
            if proc.poll() is not None:
                raise ProbeError(f"Server exited with code {proc.returncode} before becoming ready")
            try:
                with urllib.request.urlopen(base_url, timeout=max(0.1, min(2.0, deadline - time.time()))):
                    return
            except urllib.error.HTTPError:
                # Any HTTP answer means the server is listening
                return
            except (urllib.error.URLError, OSError):
                time.sleep(0.5)
        raise ProbeError(f"Server not ready after {time.time() - started:.0f}s")

    def validate(self, root: Path) -> ValidationResult:
        started = time.time()
        routes = list(self.routes)
        if self.discover:
            routes.extend(r for r in discover_routes(SourceTree(root)) if r not in routes)

        # validation_timeout bounds server start-up and every route check together
        deadline = started + self.timeout
        with self.serve(root, min(deadline, started + self.ready_timeout)) as base_url:
            results: List[RouteResult] = []
            for route in routes:
                remaining = deadline - time.time()
                if remaining <= 0:
                    results.append(RouteResult(route=route, success=False,
                                               error=f"Validation timed out after {self.timeout}s"))
                    continue
                results.append(check_route(base_url, route, timeout=min(10.0, remaining)))

        errors = [f"{r.route}: {r.error}" for r in results if not r.success]
        return ValidationResult(
            success=not errors,
            route_results=results,
            errors=errors,
            duration_ms=int((time.time() - started) * 1000),
        )


# ===================================================================
# Probe
# ===================================================================

class MetricsProbe:
    """Serialised, non-retrying access to an :class:`Oracle`."""

    def __init__(self, oracle: Oracle, level: str = DEFAULTS["check_level"]):
        self.oracle = oracle
        self.level = level
        self.probe_count = 0
        self.last_outcome: Optional[ProbeOutcome] = None
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def check(self, root: Path, level: Optional[str] = None) -> ProbeOutcome:
        """Build, then validate when *level* is ``"full"``."""
        level = level or self.level
        started = time.time()
        with self._lock:
            self.probe_count += 1
            outcome = self._run(root, level)
        outcome.duration_ms = int((time.time() - started) * 1000)
        self.last_outcome = outcome
        logger.info("Probe #%d (%s): %s", self.probe_count, level, "passed" if outcome.success else "failed")
        return outcome

    def build_only(self, root: Path) -> ProbeOutcome:
        return self.check(root, level="build")

    def measure(self, root: Path, component_count: int = 0, dependency_count: int = 0) -> BundleMetrics:
        """Build the current tree and return its size figures.

        A failed build yields metrics with zero size.
        """
        outcome = self.build_only(root)
        if not outcome.success:
            return BundleMetrics(component_count=component_count, dependency_count=dependency_count)
        return metrics_from(outcome, component_count, dependency_count)

    def _run(self, root: Path, level: str) -> ProbeOutcome:
        try:
            build = self.oracle.build(root)
        except Exception as exc:
            logger.warning("Build probe failed: %s", exc)
            return ProbeOutcome(success=False, level=level, errors=[str(exc)])
        if not build.success:
            return ProbeOutcome(success=False, level=level, build=build, errors=list(build.errors))
        if level == "build":
            return ProbeOutcome(success=True, level=level, build=build)

        try:
            validation = self.oracle.validate(root)
        except Exception as exc:
            logger.warning("Validation probe failed: %s", exc)
            return ProbeOutcome(success=False, level=level, build=build, errors=[str(exc)])
        return ProbeOutcome(
            success=validation.success,
            level=level,
            build=build,
            validation=validation,
            errors=list(validation.errors),
        )


def metrics_from(outcome: ProbeOutcome, component_count: int = 0, dependency_count: int = 0) -> BundleMetrics:
    """Bundle metrics for a probe outcome and the current unit counts."""
    build = outcome.build
    if build is None:
        return BundleMetrics(component_count=component_count, dependency_count=dependency_count)
    chunk_count = len(build.chunks) or sum(1 for name in build.artifact_sizes if name.endswith(".js"))
    size_kb = build.size_kb or round(sum(c.size_kb for c in build.chunks), 2)
    return BundleMetrics(
        size_kb=size_kb,
        chunk_count=chunk_count,
        dependency_count=dependency_count,
        component_count=component_count,
        largest_chunks=build.chunks[:5],
    )


def compare_metrics(before: BundleMetrics, after: BundleMetrics) -> Dict[str, Any]:
    """Reductions between two measurements plus human-readable deltas."""
    size_delta = round(before.size_kb - after.size_kb, 2)
    percent = round(size_delta / before.size_kb * 100, 1) if before.size_kb > 0 else 0.0
    reduction = {
        "size_kb": size_delta,
        "size_percent": percent,
        "chunks": before.chunk_count - after.chunk_count,
        "dependencies": before.dependency_count - after.dependency_count,
        "components": before.component_count - after.component_count,
    }

    improvements: List[str] = []
    regressions: List[str] = []
    if size_delta > 0:
        improvements.append(f"Bundle size reduced by {size_delta} KB ({percent}%)")
    elif size_delta < 0:
        regressions.append(f"Bundle size increased by {abs(size_delta)} KB ({abs(percent)}%)")
    if reduction["chunks"] > 0:
        improvements.append(f"{reduction['chunks']} fewer chunks")
    elif reduction["chunks"] < 0:
        regressions.append(f"{abs(reduction['chunks'])} more chunks")
    if reduction["dependencies"] > 0:
        improvements.append(f"{reduction['dependencies']} fewer dependencies")
    if reduction["components"] > 0:
        improvements.append(f"{reduction['components']} fewer components")

    return {"reduction": reduction, "improvements": improvements, "regressions": regressions}
