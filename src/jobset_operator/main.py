"""Main operator entrypoint using Kopf."""

import functools
import logging

import kopf

from . import crd
from .admission import default_jobset_spec, review
from .config import OperatorConfig
from .k8s import ClusterStore, init_clients
from .reconcile import reconcile_jobset
from .workqueue import Controller

CONFIG = OperatorConfig.from_env()

# Configure logging
logging.basicConfig(
    level=CONFIG.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_controller = None


def get_controller():
    if _controller is None:
        raise kopf.TemporaryError("Reconcile workers are not running yet", delay=5)
    return _controller


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs):
    """Load cluster credentials, configure webhooks and start the workers."""
    global _controller

    settings.posting.level = logging.WARNING
    if CONFIG.webhook_port:
        settings.admission.server = kopf.WebhookServer(
            addr=CONFIG.webhook_host,
            port=CONFIG.webhook_port,
            certfile=CONFIG.webhook_certfile,
            pkeyfile=CONFIG.webhook_keyfile,
        )
        settings.admission.managed = f"webhooks.{crd.GROUP}"
        logger.info(f"Admission webhooks served on {CONFIG.webhook_host}:{CONFIG.webhook_port}")
    else:
        logger.warning("JOBSET_WEBHOOK_PORT is not set; JobSet admission checks are disabled")

    init_clients()
    store = ClusterStore()
    _controller = Controller(
        functools.partial(reconcile_jobset, store, config=CONFIG),
        workers=CONFIG.workers,
        base_delay=CONFIG.backoff_base,
        max_delay=CONFIG.backoff_max,
    )
    _controller.start()


@kopf.on.cleanup()
def shutdown(**kwargs):
    """Stop the reconcile workers."""
    if _controller is not None:
        _controller.stop()


@kopf.on.create(crd.GROUP, crd.VERSION, crd.PLURAL)
@kopf.on.update(crd.GROUP, crd.VERSION, crd.PLURAL)
@kopf.on.resume(crd.GROUP, crd.VERSION, crd.PLURAL)
def jobset_handler(name, namespace, **kwargs):
    """Queue a JobSet for reconciliation on create/update/resume."""
    logger.debug(f"JobSet {namespace}/{name} changed")
    get_controller().enqueue(namespace, name)


@kopf.timer(crd.GROUP, crd.VERSION, crd.PLURAL, interval=CONFIG.resync_interval)
def jobset_resync(name, namespace, **kwargs):
    """Periodic resync, in case a watch event was missed."""
    get_controller().enqueue(namespace, name)


@kopf.on.event("batch", "v1", "jobs", labels={crd.LABEL_JOBSET_NAME: kopf.PRESENT})
def child_job_event(labels, namespace, **kwargs):
    """Queue the owning JobSet whenever one of its Jobs changes."""
    if _controller is not None:
        _controller.enqueue(namespace, labels[crd.LABEL_JOBSET_NAME])


@kopf.on.delete(crd.GROUP, crd.VERSION, crd.PLURAL, optional=True)
def jobset_delete(name, namespace, **kwargs):
    """Handle JobSet deletion."""
    logger.info(f"JobSet {namespace}/{name} deleted, owner references cascade to its Jobs and Services")


@kopf.on.mutate(crd.GROUP, crd.VERSION, crd.PLURAL, operations=["CREATE", "UPDATE"])
def jobset_default(spec, patch, **kwargs):
    """Fill unset JobSet fields with their defaults."""
    defaulted = default_jobset_spec(spec)
    for key, value in defaulted.items():
        if spec.get(key) != value:
            patch.spec[key] = value


@kopf.on.validate(crd.GROUP, crd.VERSION, crd.PLURAL)
def jobset_validate(operation, body, old=None, **kwargs):
    """Reject JobSet writes that break structural or immutability rules."""
    decision = review(
        operation,
        dict(body),
        dict(old) if old else None,
        mutable_pod_fields=CONFIG.suspended_mutable_pod_fields,
    )
    if not decision.allowed:
        raise kopf.AdmissionError(f"{decision.reason}: {decision.message}", code=422)


if __name__ == "__main__":
    kopf.run()
