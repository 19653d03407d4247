"""
Kubernetes Watch Source - Pod and service events from the Kubernetes API.

Lists services and pods, then watches both. Services are kept in a
namespace-scoped index so ``services_matching_pod`` can answer without a
round trip. When a watch ends or fails the resource is listed again and the
difference against the known pods is dispatched as callbacks.
"""

import asyncio
import base64
import json
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
import yaml

from config import KubernetesConfig
from models import Pod, Service
from watch.base import PodEventHandler, WatchSource

logger = logging.getLogger(__name__)

USER_AGENT = "extension-auto-registration-kubernetes"
SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
RELIST_DELAY = 5  # seconds to wait after a failed list or watch


class KubernetesError(Exception):
    """Raised when the Kubernetes API cannot be reached or rejects a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


@dataclass
class KubernetesConnection:
    """How to reach and authenticate against the API server."""

    server: str
    token: Optional[str] = field(default=None, repr=False)
    token_file: Optional[str] = None
    ca_file: Optional[str] = None
    ca_data: Optional[str] = field(default=None, repr=False)
    client_cert_file: Optional[str] = None
    client_key_file: Optional[str] = None
    verify_ssl: bool = True
    # Inline kubeconfig credentials written to disk, removed on close
    temp_files: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def in_cluster(cls) -> Optional["KubernetesConnection"]:
        """Service account connection, or None when not running in a pod."""
        host = os.getenv("KUBERNETES_SERVICE_HOST")
        port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
        token_file = os.path.join(SERVICE_ACCOUNT_DIR, "token")
        if not host or not os.path.exists(token_file):
            return None
        if ":" in host:
            host = f"[{host}]"
        ca_file = os.path.join(SERVICE_ACCOUNT_DIR, "ca.crt")
        return cls(
            server=f"https://{host}:{port}",
            token_file=token_file,
            ca_file=ca_file if os.path.exists(ca_file) else None,
        )

    @classmethod
    def from_kubeconfig(
        cls, path: str, context: Optional[str] = None
    ) -> "KubernetesConnection":
        """
        Connection described by a kubeconfig file.

        Raises:
            KubernetesError: If the file is missing or incomplete
        """
        try:
            with open(path, "r") as f:
                kubeconfig = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise KubernetesError(f"Could not read kubeconfig {path}: {e}")

        base_dir = os.path.dirname(os.path.abspath(path))
        context_name = context or kubeconfig.get("current-context")
        ctx = _named(kubeconfig.get("contexts"), context_name)
        if ctx is None:
            raise KubernetesError(f"Context '{context_name}' not found in {path}")
        cluster = _named(kubeconfig.get("clusters"), ctx.get("cluster"))
        if cluster is None or not cluster.get("server"):
            raise KubernetesError(f"Cluster '{ctx.get('cluster')}' not found in {path}")
        user = _named(kubeconfig.get("users"), ctx.get("user")) or {}

        if "exec" in user or "auth-provider" in user:
            logger.warning(
                "kubeconfig user uses an exec or auth-provider plugin, "
                "which is not supported; requests are sent unauthenticated"
            )

        temp_files: List[str] = []
        client_cert = _file_or_data(user, "client-certificate", base_dir, temp_files)
        client_key = _file_or_data(user, "client-key", base_dir, temp_files)
        ca_data = cluster.get("certificate-authority-data")
        return cls(
            server=cluster["server"].rstrip("/"),
            token=user.get("token"),
            token_file=_resolve(user.get("tokenFile"), base_dir),
            ca_file=_resolve(cluster.get("certificate-authority"), base_dir),
            ca_data=base64.b64decode(ca_data).decode() if ca_data else None,
            client_cert_file=client_cert,
            client_key_file=client_key,
            verify_ssl=not cluster.get("insecure-skip-tls-verify", False),
            temp_files=temp_files,
        )

    @classmethod
    def load(cls, config: KubernetesConfig) -> "KubernetesConnection":
        """
        Prefer the in-cluster service account, fall back to kubeconfig.

        Raises:
            KubernetesError: If no configuration is found
        """
        connection = cls.in_cluster()
        if connection is not None:
            logger.info("Running inside a cluster, using service account")
            return connection
        logger.info(
            f"Not running inside a cluster, trying kubeconfig {config.kubeconfig}"
        )
        return cls.from_kubeconfig(config.kubeconfig)

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.server.startswith("https"):
            return None
        ctx = ssl.create_default_context(cafile=self.ca_file, cadata=self.ca_data)
        if not self.verify_ssl:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        if self.client_cert_file:
            ctx.load_cert_chain(self.client_cert_file, self.client_key_file)
        return ctx

    def headers(self) -> Dict[str, str]:
        """Request headers; a token file is re-read so rotated tokens are used."""
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        token = self.token
        if self.token_file:
            with open(self.token_file, "r") as f:
                token = f.read().strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def remove_temp_files(self) -> None:
        """Delete credential files written from inline kubeconfig data."""
        while self.temp_files:
            path = self.temp_files.pop()
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass


def _named(entries: Optional[List[Dict[str, Any]]], name: Optional[str]):
    for entry in entries or []:
        if entry.get("name") == name:
            for key in ("context", "cluster", "user"):
                if key in entry:
                    return entry[key] or {}
            return {}
    return None


def _resolve(path: Optional[str], base_dir: str) -> Optional[str]:
    if not path:
        return None
    return path if os.path.isabs(path) else os.path.join(base_dir, path)


def _file_or_data(
    user: Dict[str, Any], key: str, base_dir: str, temp_files: List[str]
) -> Optional[str]:
    """Return a file holding ``key``, writing inline ``<key>-data`` to a temp file."""
    if user.get(key):
        return _resolve(user[key], base_dir)
    data = user.get(f"{key}-data")
    if not data:
        return None
    handle = tempfile.NamedTemporaryFile(
        mode="wb", prefix="kube-", suffix=".pem", delete=False
    )
    with handle:
        handle.write(base64.b64decode(data))
    temp_files.append(handle.name)
    return handle.name


class KubernetesClient:
    """Minimal async client for the Kubernetes REST API."""

    def __init__(
        self,
        connection: KubernetesConnection,
        request_timeout: float = 10.0,
        log_http_requests: bool = False,
    ):
        self.connection = connection
        self.request_timeout = request_timeout
        self.log_http_requests = log_http_requests
        self._session: Optional[aiohttp.ClientSession] = None

    async def open(self) -> None:
        if self._session is not None:
            return
        trace_configs = []
        if self.log_http_requests:
            trace_configs.append(_request_logging_trace())
        ssl_context = self.connection.ssl_context()
        self._session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(
                ssl=ssl_context if ssl_context is not None else True
            ),
            trace_configs=trace_configs,
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        self.connection.remove_temp_files()

    async def __aenter__(self) -> "KubernetesClient":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        return f"{self.connection.server}{path}"

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise KubernetesError("Kubernetes client is not open")
        return self._session

    async def get(
        self, path: str, params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", path, json=body)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with self.session.request(
                method,
                self._url(path),
                headers=self.connection.headers(),
                timeout=timeout,
                **kwargs,
            ) as resp:
                body = await resp.text()
                if resp.status >= 300:
                    raise KubernetesError(
                        f"{method} {path} failed: HTTP {resp.status}: {body[:200]}",
                        status=resp.status,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise KubernetesError(f"{method} {path} failed: {e}")
        if not body:
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise KubernetesError(f"{method} {path} returned invalid JSON: {e}")

    async def watch(
        self, path: str, resource_version: str, timeout_seconds: int
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream watch events for a collection.

        Yields decoded ``{"type": ..., "object": ...}`` events until the
        server closes the stream.
        """
        params = {
            "watch": "1",
            "resourceVersion": resource_version,
            "timeoutSeconds": str(timeout_seconds),
        }
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.request_timeout,
            sock_read=timeout_seconds + self.request_timeout,
        )
        async with self.session.get(
            self._url(path),
            params=params,
            headers=self.connection.headers(),
            timeout=timeout,
        ) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise KubernetesError(
                    f"Watch {path} failed: HTTP {resp.status}: {body[:200]}",
                    status=resp.status,
                )
            buffer = b""
            async for chunk in resp.content.iter_any():
                buffer += chunk
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if line.strip():
                        yield json.loads(line)
            if buffer.strip():
                yield json.loads(buffer)

    async def server_version(self) -> str:
        info = await self.get("/version")
        return info.get("gitVersion", "unknown")


def _request_logging_trace() -> aiohttp.TraceConfig:
    async def on_request_end(session, ctx, params):
        logger.debug(
            f"Kubernetes request {params.method} {params.url} -> "
            f"{params.response.status}"
        )

    async def on_request_exception(session, ctx, params):
        logger.debug(
            f"Kubernetes request {params.method} {params.url} failed: "
            f"{params.exception}"
        )

    trace = aiohttp.TraceConfig()
    trace.on_request_end.append(on_request_end)
    trace.on_request_exception.append(on_request_exception)
    return trace


class KubernetesWatchSource(WatchSource):
    """
    Watch source backed by the Kubernetes API.

    Only pod callbacks are dispatched. A service change updates the index
    used by ``services_matching_pod`` and re-dispatches every known pod the
    old or new version of the service selects as an update.
    """

    def __init__(
        self,
        client: KubernetesClient,
        namespace: str = "",
        watch_timeout: int = 300,
        relist_delay: float = RELIST_DELAY,
    ):
        self.client = client
        self.namespace = namespace
        self.watch_timeout = watch_timeout
        self.relist_delay = relist_delay
        self.running = False

        self._pods: Dict[str, Pod] = {}
        self._services: Dict[str, Dict[str, Service]] = {}
        self._resource_versions: Dict[str, Optional[str]] = {
            "pods": None,
            "services": None,
        }

    @property
    def name(self) -> str:
        return "kubernetes"

    def _path(self, resource: str) -> str:
        if self.namespace:
            return f"/api/v1/namespaces/{self.namespace}/{resource}"
        return f"/api/v1/{resource}"

    def services_matching_pod(self, pod: Pod) -> List[Service]:
        services = list(self._services.get(pod.namespace, {}).values())
        return [service for service in services if service.selects(pod)]

    async def initial_sync(self, handler: PodEventHandler) -> None:
        """
        List services, then pods.

        Raises:
            KubernetesError: If either list fails
        """
        logger.info("Start Kubernetes cache sync")
        self._resource_versions["services"] = await self._list_services()
        self._resource_versions["pods"] = await self._list_pods(handler)
        logger.info(
            f"Kubernetes caches synced: {len(self._pods)} pods, "
            f"{sum(len(s) for s in self._services.values())} services"
        )

    async def watch(self, handler: PodEventHandler) -> None:
        self.running = True
        tasks = [
            asyncio.create_task(self._watch_loop("services", handler)),
            asyncio.create_task(self._watch_loop("pods", handler)),
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def stop(self) -> None:
        self.running = False
        await self.client.close()

    async def _watch_loop(self, resource: str, handler: PodEventHandler) -> None:
        while self.running:
            try:
                resource_version = self._resource_versions[resource]
                if resource_version is None:
                    if resource == "pods":
                        resource_version = await self._list_pods(handler)
                    else:
                        resource_version = await self._list_services(handler)
                    self._resource_versions[resource] = resource_version

                async for event in self.client.watch(
                    self._path(resource), resource_version, self.watch_timeout
                ):
                    self._handle_event(resource, event, handler)

                logger.debug(f"Watch on {resource} closed, relisting")
            except (KubernetesError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"Watch on {resource} failed: {e}")
                await asyncio.sleep(self.relist_delay)
            except ValueError as e:
                logger.error(f"Watch on {resource} returned invalid data: {e}")
                await asyncio.sleep(self.relist_delay)
            self._resource_versions[resource] = None

    def _handle_event(
        self, resource: str, event: Dict[str, Any], handler: PodEventHandler
    ) -> None:
        event_type = event.get("type")
        obj = event.get("object") or {}
        if event_type == "ERROR":
            raise KubernetesError(
                f"Watch error: {obj.get('message', 'unknown')}", status=obj.get("code")
            )
        if event_type not in ("ADDED", "MODIFIED", "DELETED"):
            return

        resource_version = (obj.get("metadata") or {}).get("resourceVersion")
        if resource_version:
            self._resource_versions[resource] = resource_version

        if resource == "services":
            self._apply_service_event(event_type, Service.from_dict(obj), handler)
        else:
            self._apply_pod_event(event_type, Pod.from_dict(obj), handler)

    def _apply_service_event(
        self, event_type: str, service: Service, handler: PodEventHandler
    ) -> None:
        services = self._services.setdefault(service.namespace, {})
        if event_type == "DELETED":
            old = services.pop(service.name, None)
            self._refresh_selected_pods([old or service], handler)
        else:
            old = services.get(service.name)
            services[service.name] = service
            if old != service:
                self._refresh_selected_pods([old, service], handler)

    def _refresh_selected_pods(
        self, services: List[Optional[Service]], handler: PodEventHandler
    ) -> None:
        """Re-dispatch known pods selected by any of ``services``."""
        services = [s for s in services if s is not None]
        for pod in list(self._pods.values()):
            if any(service.selects(pod) for service in services):
                _dispatch(handler.on_pod_updated, pod, pod)

    def _apply_pod_event(
        self, event_type: str, pod: Pod, handler: PodEventHandler
    ) -> None:
        if event_type == "DELETED":
            known = self._pods.pop(pod.key, None)
            _dispatch(handler.on_pod_deleted, known or pod)
            return

        old = self._pods.get(pod.key)
        self._pods[pod.key] = pod
        if old is None:
            _dispatch(handler.on_pod_added, pod)
        else:
            _dispatch(handler.on_pod_updated, old, pod)

    async def _list(self, resource: str) -> Tuple[str, List[Dict[str, Any]]]:
        data = await self.client.get(self._path(resource))
        resource_version = (data.get("metadata") or {}).get("resourceVersion", "")
        return resource_version, data.get("items") or []

    async def _list_services(self, handler: Optional[PodEventHandler] = None) -> str:
        resource_version, items = await self._list("services")
        index: Dict[str, Dict[str, Service]] = {}
        for item in items:
            service = Service.from_dict(item)
            index.setdefault(service.namespace, {})[service.name] = service

        previous = self._services
        self._services = index
        if handler is not None:
            changed: List[Optional[Service]] = []
            for namespace in set(previous) | set(index):
                old = previous.get(namespace, {})
                new = index.get(namespace, {})
                for name in set(old) | set(new):
                    if old.get(name) != new.get(name):
                        changed.extend([old.get(name), new.get(name)])
            if changed:
                self._refresh_selected_pods(changed, handler)
        return resource_version

    async def _list_pods(self, handler: PodEventHandler) -> str:
        resource_version, items = await self._list("pods")
        current = {}
        for item in items:
            pod = Pod.from_dict(item)
            current[pod.key] = pod

        previous = self._pods
        self._pods = current
        for key, pod in previous.items():
            if key not in current:
                _dispatch(handler.on_pod_deleted, pod)
        for key, pod in current.items():
            if key in previous:
                _dispatch(handler.on_pod_updated, previous[key], pod)
            else:
                _dispatch(handler.on_pod_added, pod)
        return resource_version


def _dispatch(callback, *pods: Pod) -> None:
    """Invoke a handler callback; a failing handler must not end the watch."""
    try:
        callback(*pods)
    except Exception as e:
        logger.error(f"Pod event handler failed for {pods[-1].key}: {e}", exc_info=True)
