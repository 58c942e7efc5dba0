"""
Kubernetes client initialization and utilities.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import logging

from stagehand.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_api_client = None
_core_v1 = None
_custom_objects = None

def init_k8s_client():
    """Initialize Kubernetes client."""
    global _api_client, _core_v1, _custom_objects

    try:
        if settings.k8s_in_cluster:
            # Running inside Kubernetes
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        else:
            # Running locally (Docker Desktop, minikube, etc.)
            config.load_kube_config()
            logger.info("Loaded local Kubernetes config")

        _api_client = client.ApiClient()
        _core_v1 = client.CoreV1Api(_api_client)
        _custom_objects = client.CustomObjectsApi(_api_client)

        # Test connection
        _core_v1.list_namespaced_pod(namespace=settings.k8s_namespace, limit=1)
        logger.info("Kubernetes client initialized successfully")

        return True
    except Exception as e:
        logger.error(f"Failed to initialize Kubernetes client: {e}")
        return False

def get_core_api() -> client.CoreV1Api:
    """Get CoreV1 API client for Pod and Secret operations."""
    global _core_v1
    if _core_v1 is None:
        init_k8s_client()
    return _core_v1

def get_custom_api() -> client.CustomObjectsApi:
    """Get CustomObjects API client for PipelineActivity, Workflow and friends."""
    global _custom_objects
    if _custom_objects is None:
        init_k8s_client()
    return _custom_objects

def get_pod_logs(pod_name: str, namespace: str = None, container: str = None) -> str:
    """Get logs from a pod, optionally for a single container."""
    namespace = namespace or settings.k8s_namespace
    core_v1 = get_core_api()

    try:
        kwargs = {"container": container} if container else {}
        return core_v1.read_namespaced_pod_log(
            name=pod_name,
            namespace=namespace,
            **kwargs,
        )
    except ApiException as e:
        if e.status == 400:
            # Container might not have started yet
            return ""
        logger.error(f"Failed to get logs for pod {pod_name}: {e}")
        raise
