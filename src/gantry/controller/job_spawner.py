"""Job spawner — hands a run to a worker process or Kubernetes Job to advance."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, Protocol

from gantry.models.config import BootstrapConfig

logger = logging.getLogger(__name__)


class JobSpawner(Protocol):
    async def spawn(self, run_id: str) -> None: ...


class SubprocessJobSpawner:
    """Spawns workers as local subprocesses. For local dev and testing."""

    def __init__(self, redis: Any = None) -> None:
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._tasks: set[asyncio.Task] = set()
        self._redis = redis

    async def spawn(self, run_id: str) -> None:
        logger.info("Spawning subprocess worker for run %s", run_id)
        proc = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "gantry.worker.main", f"--run-id={run_id}",
            env=dict(os.environ),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        self._processes[run_id] = proc

        task = asyncio.create_task(self._log_output(run_id, proc))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _log_output(self, run_id: str, proc: asyncio.subprocess.Process) -> None:
        """Relay worker output to the controller log and keep a copy in Redis for 24h."""
        try:
            stdout, _ = await proc.communicate()
            full_output = stdout.decode(errors="replace") if stdout else ""
            for line in full_output.splitlines():
                logger.info("[worker:%s] %s", run_id, line)
            logger.info("Worker for run %s exited with code %s", run_id, proc.returncode)

            if self._redis and full_output:
                await self._redis.set(f"gantry:run:{run_id}:worker_log", full_output, ex=86400)
        except Exception as e:
            logger.error("Error collecting worker output for run %s: %s", run_id, e)
        finally:
            self._processes.pop(run_id, None)


class K8sJobSpawner:
    """Spawns workers as Kubernetes Jobs. For production deployment."""

    def __init__(
        self,
        namespace: str = "gantry",
        worker_image: str = "gantry-worker:latest",
    ) -> None:
        self._namespace = namespace
        self._worker_image = worker_image

    async def spawn(self, run_id: str) -> None:
        from kubernetes import client, config as k8s_config

        try:
            k8s_config.load_incluster_config()
        except k8s_config.ConfigException:
            k8s_config.load_kube_config()

        batch_v1 = client.BatchV1Api()
        # One Job per advance: a run resumed after approval gets a fresh Job.
        job_name = f"gantry-worker-{run_id.lower()}-{os.urandom(3).hex()}"
        labels = {"app": "gantry-worker", "run-id": run_id.lower()}

        job = client.V1Job(
            metadata=client.V1ObjectMeta(name=job_name, namespace=self._namespace, labels=labels),
            spec=client.V1JobSpec(
                # A crashed apply must not be blindly re-run.
                backoff_limit=0,
                ttl_seconds_after_finished=3600,
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(
                        restart_policy="Never",
                        containers=[
                            client.V1Container(
                                name="worker",
                                image=self._worker_image,
                                command=["python", "-m", "gantry.worker.main", f"--run-id={run_id}"],
                                env_from=[
                                    client.V1EnvFromSource(
                                        config_map_ref=client.V1ConfigMapEnvSource(name="gantry-config"),
                                    ),
                                    client.V1EnvFromSource(
                                        secret_ref=client.V1SecretEnvSource(name="gantry-credentials"),
                                    ),
                                ],
                                resources=client.V1ResourceRequirements(
                                    requests={"memory": "256Mi", "cpu": "250m"},
                                    limits={"memory": "2Gi", "cpu": "2"},
                                ),
                            )
                        ],
                    ),
                ),
            ),
        )

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: batch_v1.create_namespaced_job(namespace=self._namespace, body=job),
        )
        logger.info("K8s Job %s created for run %s", job_name, run_id)


def build_job_spawner(cfg: BootstrapConfig, redis: Any = None) -> JobSpawner:
    if cfg.job_spawner == "kubernetes":
        return K8sJobSpawner(namespace=cfg.k8s_namespace, worker_image=cfg.worker_image)
    return SubprocessJobSpawner(redis=redis)
