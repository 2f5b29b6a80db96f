#!/usr/bin/env python3
"""
Kubernetes Cluster Runtime for the O-Cloud rollback controller

Reads pod and deployment status, probes application endpoints through the
API server pod proxy, and performs the few writes the tooling needs
(scale, image update, canary copies).

SSL/TLS Handling:
- Automatically clears REQUESTS_CA_BUNDLE environment variable to prevent PEM lib errors
- Validates CA certificate files before using them
- Proactively tests API connectivity and auto-disables SSL verification on errors
- Supports environment variable overrides: K8S_VERIFY, OCP_API_VERIFY, K8S_CA_CERT
"""

import asyncio
import copy
import os
import ssl
import time
from typing import Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import urllib3

from ocloud_rollback_config import Config
from ocloud_rollback_errors import ClusterUnavailable, ProbeTimeout
from ocloud_rollback_models import (
    HealthOutcome,
    HealthSample,
    InstanceStatus,
    Lineage,
    utcnow,
)
from ocloud_rollback_utils import ComponentLogger, sleep_or_stop

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

CANARY_TRACK_LABEL = 'rollout-track'

SSL_ERROR_INDICATORS = (
    "PEM lib",
    "CERTIFICATE_VERIFY_FAILED",
    "SSLError",
    "certificate verify failed",
    "ssl.c:",
    "[X509]",
    "Max retries exceeded",
)


def is_ca_file_valid(ca_path: str) -> bool:
    """Validate a CA bundle by attempting to load it with ssl"""
    try:
        if not os.path.isfile(ca_path):
            return False
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.load_verify_locations(cafile=ca_path)
        return True
    except (OSError, ssl.SSLError):
        return False


class KubernetesClusterRuntime(ComponentLogger):
    """ClusterRuntime backed by the kubernetes python client"""

    def __init__(self, config: Config, core_v1=None, apps_v1=None):
        self.config = config
        self.core_v1 = core_v1
        self.apps_v1 = apps_v1
        self.original_ca_bundle: Optional[str] = None
        if self.core_v1 is None or self.apps_v1 is None:
            self.setup_kubernetes_clients()

    def setup_kubernetes_clients(self):
        """Setup Kubernetes client configuration with robust SSL handling"""
        # Clear potentially broken REQUESTS_CA_BUNDLE
        self.original_ca_bundle = os.environ.pop('REQUESTS_CA_BUNDLE', None)
        if self.original_ca_bundle:
            self.log_info(f"Temporarily cleared REQUESTS_CA_BUNDLE: {self.original_ca_bundle}", "CONFIG")

        try:
            if self.config.kubeconfig_path:
                self.log_info(f"Loading kubeconfig from: {self.config.kubeconfig_path}", "CONFIG")
                config.load_kube_config(config_file=self.config.kubeconfig_path)
            else:
                config.load_incluster_config()
                self.log_info("Using in-cluster Kubernetes configuration", "CONFIG")
        except config.ConfigException:
            try:
                config.load_kube_config()
                self.log_info("Using default kubeconfig file", "CONFIG")
            except config.ConfigException as e:
                self.log_error(f"Failed to load Kubernetes configuration: {e}", "CONFIG")
                raise ClusterUnavailable(f"Failed to load Kubernetes configuration: {e}")

        k8s_conf = client.Configuration.get_default_copy()

        if self.config.k8s_verify_ssl is not None:
            k8s_conf.verify_ssl = self.config.k8s_verify_ssl
            if not self.config.k8s_verify_ssl:
                k8s_conf.assert_hostname = False
                k8s_conf.ssl_ca_cert = None
            self.log_info(f"SSL verification set via environment: {self.config.k8s_verify_ssl}", "CONFIG")

        if getattr(k8s_conf, 'ssl_ca_cert', None):
            ca_path = k8s_conf.ssl_ca_cert
            if not is_ca_file_valid(ca_path):
                self.log_warn(f"CA cert file exists but is invalid: {ca_path}", "CONFIG")
                if self.config.k8s_verify_ssl is not True:
                    self.log_warn("Disabling SSL verification due to invalid CA cert", "CONFIG")
                    self._disable_verification(k8s_conf)

        env_ca = self.config.k8s_ca_cert_path
        if env_ca and is_ca_file_valid(env_ca):
            k8s_conf.ssl_ca_cert = env_ca
            self.log_info(f"Using CA cert from K8S_CA_CERT env: {env_ca}", "CONFIG")

        api_client = client.ApiClient(configuration=k8s_conf)
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self._ensure_k8s_api_connectivity()
        self.log_info("Kubernetes API connectivity verified successfully", "CONFIG")

    def _disable_verification(self, k8s_conf):
        k8s_conf.verify_ssl = False
        k8s_conf.assert_hostname = False
        k8s_conf.ssl_ca_cert = None
        self.config.k8s_verify_ssl = False

    def _ensure_k8s_api_connectivity(self) -> None:
        """Probe the Kubernetes API and fall back to unverified TLS on PEM/SSL errors"""
        try:
            client.VersionApi(self.core_v1.api_client).get_code(_request_timeout=self.config.api_timeout)
            return
        except Exception as probe_err:
            err_text = str(probe_err)
            if not any(ind in err_text for ind in SSL_ERROR_INDICATORS):
                self.log_error(f"Kubernetes API connectivity check failed (non-SSL): {err_text}", "CONFIG")
                raise ClusterUnavailable(err_text) from probe_err

            self.log_warn(
                f"Kubernetes API SSL verification failed: {err_text[:200]}... "
                "Disabling TLS verification as fallback (set K8S_VERIFY=true to force verification)",
                "CONFIG"
            )

        k8s_conf_fallback = client.Configuration.get_default_copy()
        self._disable_verification(k8s_conf_fallback)
        api_client_fallback = client.ApiClient(configuration=k8s_conf_fallback)
        self.core_v1 = client.CoreV1Api(api_client_fallback)
        self.apps_v1 = client.AppsV1Api(api_client_fallback)

        try:
            client.VersionApi(api_client_fallback).get_code(_request_timeout=self.config.api_timeout)
            self.log_info("Kubernetes API connectivity verified (SSL verification disabled)", "CONFIG")
        except Exception as fallback_err:
            self.log_error(f"Kubernetes API connectivity failed even with TLS disabled: {fallback_err}", "CONFIG")
            raise ClusterUnavailable(str(fallback_err)) from fallback_err

    def __del__(self):
        """Restore original REQUESTS_CA_BUNDLE if it was cleared"""
        if getattr(self, 'original_ca_bundle', None):
            os.environ['REQUESTS_CA_BUNDLE'] = self.original_ca_bundle

    async def _api(self, func, **kwargs):
        """Run a blocking API call in a worker thread, bounded by API_TIMEOUT"""
        kwargs.setdefault('_request_timeout', self.config.api_timeout)
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ApiException:
            raise
        except urllib3.exceptions.HTTPError as e:
            raise ClusterUnavailable(f"Kubernetes API request failed: {e}") from e

    # Read-only operations

    async def list_instances(self, lineage: Lineage) -> List[str]:
        """Names of the pods matching the lineage selector"""
        try:
            pods = await self._api(
                self.core_v1.list_namespaced_pod,
                namespace=lineage.namespace,
                label_selector=lineage.label_selector
            )
        except ApiException as e:
            raise ClusterUnavailable(f"Failed to list pods for {lineage.key}: {e.reason}") from e
        return sorted(pod.metadata.name for pod in pods.items
                      if not getattr(pod.metadata, 'deletion_timestamp', None))

    async def get_instance_status(self, lineage: Lineage, instance_id: str) -> InstanceStatus:
        try:
            pod = await self._api(
                self.core_v1.read_namespaced_pod_status,
                name=instance_id,
                namespace=lineage.namespace
            )
        except ApiException as e:
            raise ClusterUnavailable(f"Failed to read pod {instance_id}: {e.reason}") from e

        status = pod.status
        ready = any(
            c.type == 'Ready' and c.status == 'True'
            for c in (status.conditions or [])
        )
        restarts = sum(c.restart_count or 0 for c in (status.container_statuses or []))
        return InstanceStatus(phase=status.phase or 'Unknown', ready=ready, restart_count=restarts)

    async def probe_endpoint(self, lineage: Lineage, instance_id: str, path: str,
                             timeout: float) -> bool:
        """GET an application endpoint on a pod through the API server proxy"""
        try:
            await self._api(
                self.core_v1.connect_get_namespaced_pod_proxy_with_path,
                name=f"{instance_id}:{self.config.health_port}",
                namespace=lineage.namespace,
                path=path.lstrip('/'),
                _request_timeout=timeout
            )
            return True
        except ApiException as e:
            self.logger.debug(f"Probe {path} on {instance_id} returned {e.status}")
            return False
        except ClusterUnavailable as e:
            if isinstance(e.__cause__, urllib3.exceptions.TimeoutError):
                raise ProbeTimeout(f"Probe {path} on {instance_id} timed out after {timeout}s") from e
            raise

    async def check_instance(self, lineage: Lineage, instance_id: str,
                             paths: Optional[List[str]] = None) -> HealthSample:
        """Pod phase + Ready condition + application endpoints, as one sample.

        ``paths`` defaults to the health path; every path must answer for the
        instance to be healthy.
        """
        try:
            status = await self.get_instance_status(lineage, instance_id)
        except ClusterUnavailable as e:
            return HealthSample(instance_id, utcnow(), HealthOutcome.UNREACHABLE, str(e))

        if status.restart_count > self.config.restart_warn_threshold:
            self.log_warn(f"Pod {instance_id} has restarted {status.restart_count} times", "HEALTH")

        if status.phase != 'Running' or not status.ready:
            return HealthSample(
                instance_id, utcnow(), HealthOutcome.UNHEALTHY,
                f"phase={status.phase} ready={status.ready}"
            )

        for path in paths or [self.config.health_path]:
            try:
                ok = await self.probe_endpoint(lineage, instance_id, path, self.config.probe_timeout)
            except (ProbeTimeout, ClusterUnavailable) as e:
                return HealthSample(instance_id, utcnow(), HealthOutcome.UNREACHABLE, str(e))
            if not ok:
                return HealthSample(instance_id, utcnow(), HealthOutcome.UNHEALTHY, f"{path} check failed")

        return HealthSample(instance_id, utcnow(), HealthOutcome.HEALTHY)

    async def service_endpoints(self, lineage: Lineage) -> List[str]:
        """Ready endpoint addresses behind the lineage service; empty if the service is missing"""
        try:
            endpoints = await self._api(
                self.core_v1.read_namespaced_endpoints,
                name=lineage.service_name,
                namespace=lineage.namespace
            )
        except ApiException as e:
            if e.status == 404:
                self.log_warn(f"Service {lineage.service_name} not found in {lineage.namespace}", "SERVICE")
                return []
            raise ClusterUnavailable(f"Failed to read endpoints of {lineage.service_name}: {e.reason}") from e

        return [
            address.ip
            for subset in (endpoints.subsets or [])
            for address in (subset.addresses or [])
        ]

    async def restart_counts(self, lineage: Lineage) -> Dict[str, int]:
        counts = {}
        for instance_id in await self.list_instances(lineage):
            status = await self.get_instance_status(lineage, instance_id)
            counts[instance_id] = status.restart_count
        return counts

    async def request_service(self, lineage: Lineage, path: str, timeout: float) -> Tuple[bool, float]:
        """GET a path on the lineage service through the API server proxy"""
        start = time.perf_counter()
        try:
            await self._api(
                self.core_v1.connect_get_namespaced_service_proxy_with_path,
                name=f"{lineage.service_name}:{self.config.health_port}",
                namespace=lineage.namespace,
                path=path.lstrip('/'),
                _request_timeout=timeout
            )
            ok = True
        except (ApiException, ClusterUnavailable):
            ok = False
        return ok, time.perf_counter() - start

    async def read_deployment(self, lineage: Lineage):
        try:
            return await self._api(
                self.apps_v1.read_namespaced_deployment,
                name=lineage.deployment_name,
                namespace=lineage.namespace
            )
        except ApiException as e:
            raise ClusterUnavailable(
                f"Failed to read deployment {lineage.deployment_name}: {e.reason}"
            ) from e

    async def get_replicas(self, lineage: Lineage) -> int:
        deployment = await self.read_deployment(lineage)
        return deployment.spec.replicas or 0

    async def get_image(self, lineage: Lineage) -> Tuple[str, str]:
        """(container name, image) of the first container of the deployment"""
        deployment = await self.read_deployment(lineage)
        container = deployment.spec.template.spec.containers[0]
        return container.name, container.image

    async def wait_until_ready(self, lineage: Lineage, timeout: float,
                               stop: Optional[asyncio.Event] = None,
                               poll_interval: float = 2.0) -> bool:
        """Wait until every desired replica is updated, ready and available.

        Returns False on timeout and as soon as ``stop`` is set.
        """
        deadline = time.time() + timeout

        while time.time() < deadline:
            try:
                deployment = await self._api(
                    self.apps_v1.read_namespaced_deployment,
                    name=lineage.deployment_name,
                    namespace=lineage.namespace
                )
            except ApiException as e:
                if e.status == 404:
                    if await sleep_or_stop(poll_interval, stop):
                        return False
                    continue
                self.log_warn(f"Error checking deployment {lineage.deployment_name} status: {e.reason}", "DEPLOYMENT")
                return False
            except ClusterUnavailable as e:
                self.log_warn(f"Error checking deployment {lineage.deployment_name} status: {e}", "DEPLOYMENT")
                if await sleep_or_stop(poll_interval, stop):
                    return False
                continue

            spec_replicas = deployment.spec.replicas or 0
            status = deployment.status
            updated = status.updated_replicas or 0
            ready = status.ready_replicas or 0
            available = status.available_replicas or 0
            observed = (status.observed_generation or 0) >= (deployment.metadata.generation or 0)

            if observed and spec_replicas > 0 and updated == ready == available == spec_replicas:
                self.log_info(f"Deployment {lineage.deployment_name} is ready with {spec_replicas} pods", "DEPLOYMENT")
                return True

            if await sleep_or_stop(poll_interval, stop):
                self.log_warn(f"Stopped waiting for deployment {lineage.deployment_name}", "DEPLOYMENT")
                return False

        self.log_warn(f"Timeout waiting for deployment {lineage.deployment_name} to be ready", "DEPLOYMENT")
        return False

    # Write operations

    async def scale(self, lineage: Lineage, replicas: int) -> None:
        try:
            await self._api(
                self.apps_v1.patch_namespaced_deployment_scale,
                name=lineage.deployment_name,
                namespace=lineage.namespace,
                body={'spec': {'replicas': replicas}}
            )
        except ApiException as e:
            raise ClusterUnavailable(f"Failed to scale {lineage.deployment_name}: {e.reason}") from e
        self.log_info(f"Scaled {lineage.deployment_name} to {replicas} replicas", "DEPLOYMENT")

    async def set_image(self, lineage: Lineage, image: str, container: Optional[str] = None) -> None:
        if container is None:
            container, _ = await self.get_image(lineage)
        body = {'spec': {'template': {'spec': {'containers': [{'name': container, 'image': image}]}}}}
        try:
            await self._api(
                self.apps_v1.patch_namespaced_deployment,
                name=lineage.deployment_name,
                namespace=lineage.namespace,
                body=body
            )
        except ApiException as e:
            raise ClusterUnavailable(f"Failed to set image on {lineage.deployment_name}: {e.reason}") from e
        self.log_info(f"Set image {image} on {lineage.deployment_name}/{container}", "DEPLOYMENT")

    async def create_canary(self, lineage: Lineage, image: str, replicas: int) -> Lineage:
        """Create <deployment>-canary running ``image`` and return its lineage"""
        source = await self.read_deployment(lineage)
        canary_name = f"{lineage.deployment_name}-canary"

        labels = dict(source.spec.template.metadata.labels or {})
        labels[CANARY_TRACK_LABEL] = 'canary'
        match_labels = dict(source.spec.selector.match_labels or {})
        match_labels[CANARY_TRACK_LABEL] = 'canary'

        template = copy.deepcopy(source.spec.template)
        template.metadata.labels = labels
        template.spec.containers[0].image = image

        body = client.V1Deployment(
            metadata=client.V1ObjectMeta(
                name=canary_name,
                namespace=lineage.namespace,
                labels={**(source.metadata.labels or {}), CANARY_TRACK_LABEL: 'canary'}
            ),
            spec=client.V1DeploymentSpec(
                replicas=replicas,
                selector=client.V1LabelSelector(match_labels=match_labels),
                template=template
            )
        )

        try:
            await self._api(
                self.apps_v1.create_namespaced_deployment,
                namespace=lineage.namespace,
                body=body
            )
        except ApiException as e:
            if e.status != 409:
                raise ClusterUnavailable(f"Failed to create canary {canary_name}: {e.reason}") from e
            self.log_warn(f"Canary {canary_name} already exists, reusing it", "CANARY")
        else:
            self.log_info(f"Created canary deployment {canary_name} with {replicas} replicas", "CANARY")

        selector = ','.join(f"{k}={v}" for k, v in sorted(match_labels.items()))
        return Lineage(
            release=lineage.release,
            namespace=lineage.namespace,
            deployment=canary_name,
            selector=selector,
            service=lineage.service,
        )

    async def delete_deployment(self, lineage: Lineage) -> None:
        try:
            await self._api(
                self.apps_v1.delete_namespaced_deployment,
                name=lineage.deployment_name,
                namespace=lineage.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise ClusterUnavailable(f"Failed to delete {lineage.deployment_name}: {e.reason}") from e
        self.log_info(f"Deleted deployment {lineage.deployment_name}", "DEPLOYMENT")
