from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

import urllib3
from kubernetes import client, config, watch
from kubernetes.client import ApiException, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from routeflare.src.errors import ClusterUnavailable, MalformedObject
from routeflare.src.objects import Gateway, HTTPRoute

LOGGER = logging.getLogger(__name__)

GATEWAY_API_GROUP = "gateway.networking.k8s.io"
GATEWAY_API_VERSION = "v1"
HTTPROUTES = "httproutes"
GATEWAYS = "gateways"

# Statuses the watch driver handles itself instead of treating as connectivity loss.
PASSTHROUGH_STATUSES = frozenset({401, 403, 410})


def load_kube_configuration(kubeconfig_path: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config(config_file=kubeconfig_path)
        LOGGER.info("Loaded local kubeconfig")


def build_custom_objects_api() -> CustomObjectsApi:
    """Return a custom objects client using the active kube configuration."""
    return client.CustomObjectsApi()


class GatewayAPIClient:
    """Read access to Gateway API ``HTTPRoute`` and ``Gateway`` objects.

    Routes are listed and watched cluster-wide unless *namespace* is set.
    Failed calls surface as :class:`ClusterUnavailable`, except ``404`` which
    means "does not exist" and the statuses in :data:`PASSTHROUGH_STATUSES`,
    which the watch driver reacts to directly.
    """

    def __init__(self, custom_api: CustomObjectsApi, namespace: str | None = None) -> None:
        self.custom_api = custom_api
        self.namespace = namespace

    def _call(
        self,
        description: str,
        fn: Any,
        passthrough: frozenset[int] = frozenset({404}),
        **kwargs: Any,
    ) -> Any:
        try:
            return fn(group=GATEWAY_API_GROUP, version=GATEWAY_API_VERSION, **kwargs)
        except ApiException as exc:
            if exc.status in passthrough:
                raise
            raise ClusterUnavailable(f"{description} failed: {exc.status} {exc.reason}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise ClusterUnavailable(f"{description} failed: {exc}") from exc

    def _list_function(self) -> tuple[Any, dict[str, Any]]:
        if self.namespace:
            return self.custom_api.list_namespaced_custom_object, {"namespace": self.namespace}
        return self.custom_api.list_cluster_custom_object, {}

    def list_routes(self) -> tuple[list[HTTPRoute], str | None]:
        """List HTTPRoutes and return them with the list's resourceVersion.

        Items that cannot be interpreted are logged and left out.
        """
        list_fn, scope = self._list_function()
        response = self._call(
            "listing HTTPRoutes",
            list_fn,
            passthrough=PASSTHROUGH_STATUSES,
            plural=HTTPROUTES,
            **scope,
        )

        routes: list[HTTPRoute] = []
        for item in response.get("items") or []:
            try:
                routes.append(HTTPRoute.from_object(item))
            except MalformedObject as exc:
                LOGGER.warning("Skipping malformed HTTPRoute in listing: %s", exc)
        resource_version = (response.get("metadata") or {}).get("resourceVersion")
        return routes, resource_version

    def get_route(self, namespace: str, name: str) -> HTTPRoute | None:
        try:
            obj = self._call(
                f"getting HTTPRoute {namespace}/{name}",
                self.custom_api.get_namespaced_custom_object,
                namespace=namespace,
                plural=HTTPROUTES,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return HTTPRoute.from_object(obj)

    def get_gateway(self, namespace: str, name: str) -> Gateway | None:
        try:
            obj = self._call(
                f"getting Gateway {namespace}/{name}",
                self.custom_api.get_namespaced_custom_object,
                namespace=namespace,
                plural=GATEWAYS,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return Gateway.from_object(obj)

    def watch_routes(
        self,
        watcher: watch.Watch,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[dict[str, Any]]:
        """Stream raw HTTPRoute watch events starting after *resource_version*."""
        list_fn, scope = self._list_function()
        kwargs: dict[str, Any] = {
            "group": GATEWAY_API_GROUP,
            "version": GATEWAY_API_VERSION,
            "plural": HTTPROUTES,
            "timeout_seconds": timeout_seconds,
            **scope,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version
        return watcher.stream(list_fn, **kwargs)
