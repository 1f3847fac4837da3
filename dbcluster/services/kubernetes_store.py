"""
Kubernetes implementation of the object store.

Talks to the API server through kubernetes_asyncio. Transient failures are
retried with exponential backoff; everything else is translated into the
operator's exception hierarchy at this boundary so the reconcile phases never
see an ApiException.
"""
import base64
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException

from dbcluster.config.logging import get_logger
from dbcluster.exceptions import ConflictError, NotFoundError, ObjectStoreError
from dbcluster.models.cluster import Cluster
from dbcluster.models.resources import (
    BackupArtifact,
    BackupFile,
    BackupStorage,
    Job,
    Pod,
    StatefulSet,
    VolumeClaim,
    VolumeSnapshot,
)
from dbcluster.utils.retry import retry_on_k8s_error

logger = get_logger(__name__)

T = TypeVar("T")

MERGE_PATCH = "application/merge-patch+json"

SNAPSHOT_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_VERSION = "v1"
SNAPSHOT_PLURAL = "volumesnapshots"


class KubernetesClientSet:
    """Container for Kubernetes API clients."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.custom_api = client.CustomObjectsApi(api_client)
        self.core_api = client.CoreV1Api(api_client)
        self.apps_api = client.AppsV1Api(api_client)
        self.batch_api = client.BatchV1Api(api_client)

    @classmethod
    async def create(cls, in_cluster: bool = False, kubeconfig_path: Optional[str] = None) -> "KubernetesClientSet":
        """
        Load credentials and build the API clients.

        Args:
            in_cluster: Use the service account mounted into the Pod
            kubeconfig_path: Path to a kubeconfig file (default location when None)
        """
        if in_cluster:
            config.load_incluster_config()
            logger.info("kubernetes_config_loaded", source="in_cluster")
        else:
            await config.load_kube_config(config_file=kubeconfig_path)
            logger.info("kubernetes_config_loaded", source="kubeconfig", path=kubeconfig_path)
        return cls(client.ApiClient())

    async def close(self):
        """Close all API clients."""
        if self.api_client:
            await self.api_client.close()


def _translate(e: ApiException, kind: str, name: str) -> Exception:
    if e.status == 404:
        return NotFoundError(kind, name)
    if e.status == 409:
        return ConflictError(
            f"{kind} '{name}' was modified concurrently or already exists",
            details={"kind": kind, "name": name, "reason": e.reason},
        )
    logger.error("k8s_api_call_failed", kind=kind, name=name, status=e.status, error=e.reason)
    return ObjectStoreError(
        f"{kind} '{name}': {e.reason}",
        details={"kind": kind, "name": name, "status": e.status},
    )


def _label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _condition_true(conditions: Optional[List[Any]], condition_type: str) -> bool:
    for condition in conditions or []:
        if isinstance(condition, dict):
            ctype, cstatus = condition.get("type"), condition.get("status")
        else:
            ctype, cstatus = condition.type, condition.status
        if ctype == condition_type and cstatus == "True":
            return True
    return False


# Conversions


def _to_pod(obj: client.V1Pod) -> Pod:
    status = obj.status or client.V1PodStatus()
    init_statuses = status.init_container_statuses or []
    return Pod(
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        labels=obj.metadata.labels or {},
        ip=status.pod_ip,
        node_name=obj.spec.node_name if obj.spec else None,
        ready=_condition_true(status.conditions, "Ready"),
        initializing=any(s.state is not None and s.state.running is not None for s in init_statuses),
        deleting=obj.metadata.deletion_timestamp is not None,
    )


def _to_volume_claim(obj: client.V1PersistentVolumeClaim) -> VolumeClaim:
    spec = obj.spec
    status = obj.status
    requests = (spec.resources.requests or {}) if spec.resources else {}
    capacity = (status.capacity or {}) if status else {}
    data_source = spec.data_source
    conditions = status.conditions if status else None
    return VolumeClaim(
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        labels=obj.metadata.labels or {},
        storage_request=requests.get("storage", ""),
        storage_capacity=capacity.get("storage"),
        storage_class_name=spec.storage_class_name,
        snapshot_source=data_source.name if data_source and data_source.kind == "VolumeSnapshot" else None,
        resizing=(
            _condition_true(conditions, "Resizing")
            or _condition_true(conditions, "FileSystemResizePending")
        ),
        deleting=obj.metadata.deletion_timestamp is not None,
    )


def _volume_claim_body(claim: VolumeClaim) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": claim.storage_request}},
    }
    if claim.storage_class_name:
        spec["storageClassName"] = claim.storage_class_name
    if claim.snapshot_source:
        spec["dataSource"] = {
            "apiGroup": SNAPSHOT_GROUP,
            "kind": "VolumeSnapshot",
            "name": claim.snapshot_source,
        }
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": claim.name, "namespace": claim.namespace, "labels": claim.labels},
        "spec": spec,
    }


def _to_stateful_set(obj: client.V1StatefulSet) -> StatefulSet:
    storage_size = None
    for template in obj.spec.volume_claim_templates or []:
        if template.metadata and template.metadata.name == "storage" and template.spec.resources:
            storage_size = (template.spec.resources.requests or {}).get("storage")
    return StatefulSet(
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        labels=obj.metadata.labels or {},
        replicas=obj.spec.replicas or 0,
        ready_replicas=(obj.status.ready_replicas or 0) if obj.status else 0,
        storage_size=storage_size,
    )


def _to_job(obj: client.V1Job) -> Job:
    conditions = obj.status.conditions if obj.status else None
    return Job(
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        labels=obj.metadata.labels or {},
        complete=_condition_true(conditions, "Complete"),
        failed=_condition_true(conditions, "Failed"),
    )


def _to_backup(obj: Dict[str, Any]) -> BackupArtifact:
    metadata = obj.get("metadata", {})
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    storage = spec.get("storage") or {}
    return BackupArtifact(
        name=metadata["name"],
        namespace=metadata.get("namespace", "default"),
        labels=metadata.get("labels") or {},
        storage=BackupStorage.VOLUME_SNAPSHOT if "volumeSnapshot" in storage else BackupStorage.OBJECT_STORAGE,
        spec=spec,
        complete=_condition_true(status.get("conditions"), "Complete"),
        files=[
            BackupFile(name=f["name"], taken_at=_parse_time(f["takenAt"]))
            for f in status.get("files") or []
        ],
    )


def _to_volume_snapshot(obj: Dict[str, Any]) -> VolumeSnapshot:
    metadata = obj.get("metadata", {})
    status = obj.get("status") or {}
    created = status.get("creationTime") or metadata.get("creationTimestamp")
    return VolumeSnapshot(
        name=metadata["name"],
        namespace=metadata.get("namespace", "default"),
        labels=metadata.get("labels") or {},
        created_at=_parse_time(created) or datetime.fromtimestamp(0, tz=timezone.utc),
        ready=bool(status.get("readyToUse")),
    )


class KubernetesObjectStore:
    """ObjectStore backed by the Kubernetes API server."""

    def __init__(
        self,
        client_set: KubernetesClientSet,
        group: str,
        version: str,
        plural: str,
        backup_plural: str,
        backup_kind: str = "PhysicalBackup",
    ):
        self.client_set = client_set
        self.group = group
        self.version = version
        self.plural = plural
        self.backup_plural = backup_plural
        self.backup_kind = backup_kind

    async def close(self) -> None:
        await self.client_set.close()

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        return await call()

    async def _request(self, kind: str, name: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await self._with_retries(call)
        except ApiException as e:
            raise _translate(e, kind, name) from e

    async def ping(self) -> bool:
        """Cheap connectivity check for the readiness probe."""
        try:
            await self.client_set.core_api.get_api_resources()
            return True
        except Exception as e:
            logger.warning("kubernetes_ping_failed", error=str(e))
            return False

    # Clusters

    def _cluster_from(self, obj: Dict[str, Any]) -> Cluster:
        obj = dict(obj)
        obj["status"] = obj.get("status") or {}
        return Cluster.model_validate(obj)

    async def get_cluster(self, namespace: str, name: str) -> Cluster:
        obj = await self._request(
            "DBCluster",
            name,
            lambda: self.client_set.custom_api.get_namespaced_custom_object(
                group=self.group, version=self.version, namespace=namespace, plural=self.plural, name=name
            ),
        )
        return self._cluster_from(obj)

    async def list_clusters(self, namespace: Optional[str] = None) -> List[Cluster]:
        if namespace:
            result = await self._request(
                "DBCluster",
                "*",
                lambda: self.client_set.custom_api.list_namespaced_custom_object(
                    group=self.group, version=self.version, namespace=namespace, plural=self.plural
                ),
            )
        else:
            result = await self._request(
                "DBCluster",
                "*",
                lambda: self.client_set.custom_api.list_cluster_custom_object(
                    group=self.group, version=self.version, plural=self.plural
                ),
            )
        clusters = []
        for item in result.get("items", []):
            try:
                clusters.append(self._cluster_from(item))
            except ValueError as e:
                logger.warning(
                    "cluster_object_invalid",
                    name=item.get("metadata", {}).get("name"),
                    error=str(e),
                )
        return clusters

    async def patch_cluster(
        self, namespace: str, name: str, patch: Dict[str, Any], resource_version: Optional[str]
    ) -> Cluster:
        body = dict(patch)
        if resource_version:
            body["metadata"] = {**patch.get("metadata", {}), "resourceVersion": resource_version}
        obj = await self._request(
            "DBCluster",
            name,
            lambda: self.client_set.custom_api.patch_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=namespace,
                plural=self.plural,
                name=name,
                body=body,
                _content_type=MERGE_PATCH,
            ),
        )
        return self._cluster_from(obj)

    async def patch_cluster_status(
        self, namespace: str, name: str, patch: Dict[str, Any], resource_version: Optional[str]
    ) -> Cluster:
        body: Dict[str, Any] = {"status": patch}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        obj = await self._request(
            "DBCluster",
            name,
            lambda: self.client_set.custom_api.patch_namespaced_custom_object_status(
                group=self.group,
                version=self.version,
                namespace=namespace,
                plural=self.plural,
                name=name,
                body=body,
                _content_type=MERGE_PATCH,
            ),
        )
        return self._cluster_from(obj)

    # Workload

    async def get_stateful_set(self, namespace: str, name: str) -> StatefulSet:
        obj = await self._request(
            "StatefulSet", name, lambda: self.client_set.apps_api.read_namespaced_stateful_set(name, namespace)
        )
        return _to_stateful_set(obj)

    async def create_stateful_set(self, stateful_set: StatefulSet) -> StatefulSet:
        obj = await self._request(
            "StatefulSet",
            stateful_set.name,
            lambda: self.client_set.apps_api.create_namespaced_stateful_set(
                stateful_set.namespace, stateful_set.manifest
            ),
        )
        logger.info("stateful_set_created", name=stateful_set.name, namespace=stateful_set.namespace)
        return _to_stateful_set(obj)

    async def delete_stateful_set(self, namespace: str, name: str, orphan: bool = False) -> None:
        options = client.V1DeleteOptions(propagation_policy="Orphan" if orphan else "Background")
        await self._request(
            "StatefulSet",
            name,
            lambda: self.client_set.apps_api.delete_namespaced_stateful_set(name, namespace, body=options),
        )
        logger.info("stateful_set_deleted", name=name, namespace=namespace, orphan=orphan)

    async def scale_stateful_set(self, namespace: str, name: str, replicas: int) -> StatefulSet:
        obj = await self._request(
            "StatefulSet",
            name,
            lambda: self.client_set.apps_api.patch_namespaced_stateful_set(
                name, namespace, {"spec": {"replicas": replicas}}, _content_type=MERGE_PATCH
            ),
        )
        logger.info("stateful_set_scaled", name=name, namespace=namespace, replicas=replicas)
        return _to_stateful_set(obj)

    # Pods

    async def get_pod(self, namespace: str, name: str) -> Pod:
        obj = await self._request("Pod", name, lambda: self.client_set.core_api.read_namespaced_pod(name, namespace))
        return _to_pod(obj)

    async def list_pods(self, namespace: str, labels: Dict[str, str]) -> List[Pod]:
        result = await self._request(
            "Pod",
            "*",
            lambda: self.client_set.core_api.list_namespaced_pod(namespace, label_selector=_label_selector(labels)),
        )
        return [_to_pod(item) for item in result.items]

    async def delete_pod(self, namespace: str, name: str) -> None:
        await self._request("Pod", name, lambda: self.client_set.core_api.delete_namespaced_pod(name, namespace))
        logger.info("pod_deleted", name=name, namespace=namespace)

    # Storage

    async def get_volume_claim(self, namespace: str, name: str) -> VolumeClaim:
        obj = await self._request(
            "PersistentVolumeClaim",
            name,
            lambda: self.client_set.core_api.read_namespaced_persistent_volume_claim(name, namespace),
        )
        return _to_volume_claim(obj)

    async def list_volume_claims(self, namespace: str, labels: Dict[str, str]) -> List[VolumeClaim]:
        result = await self._request(
            "PersistentVolumeClaim",
            "*",
            lambda: self.client_set.core_api.list_namespaced_persistent_volume_claim(
                namespace, label_selector=_label_selector(labels)
            ),
        )
        return [_to_volume_claim(item) for item in result.items]

    async def create_volume_claim(self, claim: VolumeClaim) -> VolumeClaim:
        obj = await self._request(
            "PersistentVolumeClaim",
            claim.name,
            lambda: self.client_set.core_api.create_namespaced_persistent_volume_claim(
                claim.namespace, _volume_claim_body(claim)
            ),
        )
        logger.info("volume_claim_created", name=claim.name, namespace=claim.namespace, snapshot=claim.snapshot_source)
        return _to_volume_claim(obj)

    async def resize_volume_claim(self, namespace: str, name: str, size: str) -> VolumeClaim:
        obj = await self._request(
            "PersistentVolumeClaim",
            name,
            lambda: self.client_set.core_api.patch_namespaced_persistent_volume_claim(
                name,
                namespace,
                {"spec": {"resources": {"requests": {"storage": size}}}},
                _content_type=MERGE_PATCH,
            ),
        )
        logger.info("volume_claim_resized", name=name, namespace=namespace, size=size)
        return _to_volume_claim(obj)

    async def delete_volume_claim(self, namespace: str, name: str) -> None:
        await self._request(
            "PersistentVolumeClaim",
            name,
            lambda: self.client_set.core_api.delete_namespaced_persistent_volume_claim(name, namespace),
        )
        logger.info("volume_claim_deleted", name=name, namespace=namespace)

    # Jobs

    async def get_job(self, namespace: str, name: str) -> Job:
        obj = await self._request("Job", name, lambda: self.client_set.batch_api.read_namespaced_job(name, namespace))
        return _to_job(obj)

    async def list_jobs(self, namespace: str, labels: Dict[str, str]) -> List[Job]:
        result = await self._request(
            "Job",
            "*",
            lambda: self.client_set.batch_api.list_namespaced_job(namespace, label_selector=_label_selector(labels)),
        )
        return [_to_job(item) for item in result.items]

    async def create_job(self, job: Job) -> Job:
        obj = await self._request(
            "Job", job.name, lambda: self.client_set.batch_api.create_namespaced_job(job.namespace, job.manifest)
        )
        logger.info("job_created", name=job.name, namespace=job.namespace)
        return _to_job(obj)

    async def delete_job(self, namespace: str, name: str) -> None:
        await self._request(
            "Job",
            name,
            lambda: self.client_set.batch_api.delete_namespaced_job(
                name, namespace, propagation_policy="Background"
            ),
        )
        logger.info("job_deleted", name=name, namespace=namespace)

    # Backups

    async def get_backup(self, namespace: str, name: str) -> BackupArtifact:
        obj = await self._request(
            self.backup_kind,
            name,
            lambda: self.client_set.custom_api.get_namespaced_custom_object(
                group=self.group, version=self.version, namespace=namespace, plural=self.backup_plural, name=name
            ),
        )
        return _to_backup(obj)

    async def create_backup(self, backup: BackupArtifact) -> BackupArtifact:
        body = {
            "apiVersion": f"{self.group}/{self.version}",
            "kind": self.backup_kind,
            "metadata": {"name": backup.name, "namespace": backup.namespace, "labels": backup.labels},
            "spec": backup.spec,
        }
        obj = await self._request(
            self.backup_kind,
            backup.name,
            lambda: self.client_set.custom_api.create_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=backup.namespace,
                plural=self.backup_plural,
                body=body,
            ),
        )
        logger.info("backup_created", name=backup.name, namespace=backup.namespace)
        return _to_backup(obj)

    async def delete_backup(self, namespace: str, name: str) -> None:
        await self._request(
            self.backup_kind,
            name,
            lambda: self.client_set.custom_api.delete_namespaced_custom_object(
                group=self.group, version=self.version, namespace=namespace, plural=self.backup_plural, name=name
            ),
        )
        logger.info("backup_deleted", name=name, namespace=namespace)

    async def list_volume_snapshots(self, namespace: str, labels: Dict[str, str]) -> List[VolumeSnapshot]:
        result = await self._request(
            "VolumeSnapshot",
            "*",
            lambda: self.client_set.custom_api.list_namespaced_custom_object(
                group=SNAPSHOT_GROUP,
                version=SNAPSHOT_VERSION,
                namespace=namespace,
                plural=SNAPSHOT_PLURAL,
                label_selector=_label_selector(labels),
            ),
        )
        return [_to_volume_snapshot(item) for item in result.get("items", [])]

    # Misc

    async def get_secret_value(self, namespace: str, name: str, key: str) -> str:
        secret = await self._request(
            "Secret", name, lambda: self.client_set.core_api.read_namespaced_secret(name, namespace)
        )
        data = secret.data or {}
        if key not in data:
            raise NotFoundError("Secret key", f"{name}/{key}")
        return base64.b64decode(data[key]).decode("utf-8")

    async def record_event(self, cluster: Cluster, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"generateName": f"{cluster.name}.", "namespace": cluster.namespace},
            "involvedObject": {
                "apiVersion": cluster.api_version,
                "kind": cluster.kind,
                "name": cluster.name,
                "namespace": cluster.namespace,
                "uid": cluster.metadata.uid,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
            "source": {"component": "dbcluster-operator"},
        }
        try:
            await self.client_set.core_api.create_namespaced_event(cluster.namespace, body)
        except Exception as e:
            logger.warning("event_record_failed", cluster=cluster.key, reason=reason, error=str(e))
