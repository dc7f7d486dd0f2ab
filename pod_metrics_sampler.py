#!/usr/bin/env python3
"""
Pod resource usage sampler
--------------------------
• Reads (pod, namespace) pairs from a CSV file.
• For every pod, polls the metrics.k8s.io API a few times with a fixed sleep
  and averages CPU / memory usage over the containers that reported data.
• Writes one row per pod to the output CSV (flushed after every row):
      <pod-name>,<avg-cpu>m,<avg-memory>Mi

Usage:
  python pod_metrics_sampler.py --input pods.csv --output metrics.csv \
    --samples 5 --interval 1
"""

import os, sys, csv, math, time, logging, argparse
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.utils import parse_quantity
from urllib3.exceptions import HTTPError

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

# ────────────  Config  ────────────
DEFAULT_INPUT    = "pods.csv"
DEFAULT_OUTPUT   = "metrics.csv"
DEFAULT_SAMPLES  = 5
DEFAULT_INTERVAL = 1.0

METRICS_GROUP   = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"

MEBIBYTE = 1024 * 1024

# status errors from the API server, and transport failures below it
API_ERRORS = (ApiException, HTTPError)

# ────────────  Logging  ────────────
level = os.getenv("LOGLEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, level, logging.INFO),
                    format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger("pod-metrics-sampler")

tracer = trace.get_tracer(__name__)


# ────────────  Records  ────────────
@dataclass
class PodRef:
    name: str
    namespace: str


@dataclass
class UsageAverage:
    name: str
    cpu_milli: int = 0
    memory_bytes: int = 0

    def to_row(self) -> List[str]:
        return [self.name, format_cpu(self.cpu_milli), format_memory(self.memory_bytes)]


# ────────────  Quantities  ────────────
def cpu_millis(quantity: str) -> int:
    """'250m' -> 250, '1' -> 1000; fractions of a millicore round up."""
    return int(math.ceil(parse_quantity(quantity) * 1000))

def memory_bytes(quantity: str) -> int:
    """'128Mi' -> 134217728; fractions of a byte round up."""
    return int(math.ceil(parse_quantity(quantity)))

def format_cpu(milli: int) -> str:
    return f"{milli}m"

def format_memory(nbytes: int) -> str:
    return f"{nbytes / MEBIBYTE:.0f}Mi"


# ────────────  Input  ────────────
def read_pods(path: str, skip_header: bool = False) -> Iterator[PodRef]:
    with open(path, newline="", encoding="utf-8") as f:
        rows = [row for row in csv.reader(f) if any(cell.strip() for cell in row)]
    if skip_header and rows:
        rows = rows[1:]
    for row in rows:
        if len(row) < 2:
            log.warning("Skipping row in %s: expected pod and namespace, got %r", path, row)
            continue
        yield PodRef(name=row[0].strip(), namespace=row[1].strip())


# ────────────  Kubernetes clients  ────────────
def setup_k8s(kubeconfig: Optional[str] = None, context: Optional[str] = None):
    if kubeconfig or context:
        config.load_kube_config(config_file=kubeconfig, context=context)
        log.info("Loaded kubeconfig %s (context=%s)", kubeconfig or "<default>", context or "<current>")
    else:
        try:
            config.load_incluster_config()
            log.info("Loaded in-cluster config")
        except ConfigException:
            config.load_kube_config()
            log.info("Loaded kubeconfig")
    return client.CoreV1Api(), client.CustomObjectsApi()

def get_pod_metrics(co: client.CustomObjectsApi, ns: str, name: str) -> dict:
    return co.get_namespaced_custom_object(
        group=METRICS_GROUP, version=METRICS_VERSION,
        namespace=ns, plural="pods", name=name
    )


# ────────────  Sampling  ────────────
def _reason(e: Exception) -> str:
    return getattr(e, "reason", None) or str(e)

def _container_usage(metrics: dict, container_name: str) -> Optional[dict]:
    for c in (metrics.get("containers") or []):
        if c.get("name") == container_name:
            return c.get("usage")
    return None

def sample_pod(v1: client.CoreV1Api, co: client.CustomObjectsApi, ref: PodRef,
               samples: int = DEFAULT_SAMPLES, interval: float = DEFAULT_INTERVAL,
               sleep: Callable[[float], None] = time.sleep) -> Optional[UsageAverage]:
    """
    Poll usage of a single pod `samples` times and average it.

    Returns None when the pod can't be looked up; the caller skips the row.
    A sample whose pod re-read fails is dropped without sleeping.
    """
    try:
        pod = v1.read_namespaced_pod(ref.name, ref.namespace)
    except API_ERRORS as e:
        log.error("Error getting pod %s/%s: %s", ref.namespace, ref.name, _reason(e))
        return None

    name = pod.metadata.name if pod.metadata else None
    if not name:
        log.warning("No name found for pod: %s in namespace: %s", ref.name, ref.namespace)
        return None

    cpu_total = mem_total = count = 0
    with tracer.start_as_current_span("sample-pod") as span:
        span.set_attribute("k8s.namespace.name", ref.namespace)
        span.set_attribute("k8s.pod.name", ref.name)
        span.set_attribute("sampler.samples", samples)

        for i in range(samples):
            try:
                pod = v1.read_namespaced_pod(ref.name, ref.namespace)
            except API_ERRORS as e:
                log.error("Error getting pod %s/%s (sample %d/%d): %s",
                          ref.namespace, ref.name, i + 1, samples, _reason(e))
                continue

            statuses = pod.status.container_statuses if pod.status else None
            if statuses:
                try:
                    metrics = get_pod_metrics(co, ref.namespace, ref.name)
                except API_ERRORS as e:
                    log.error("Error getting pod metrics %s/%s: %s", ref.namespace, ref.name, _reason(e))
                    metrics = {}

                for cs in statuses:
                    usage = _container_usage(metrics, cs.name)
                    if usage is None:
                        continue
                    try:
                        cpu = cpu_millis(usage.get("cpu", "0"))
                        mem = memory_bytes(usage.get("memory", "0"))
                    except ValueError as e:
                        log.warning("Bad usage quantity for %s/%s container %s: %s",
                                    ref.namespace, ref.name, cs.name, e)
                        continue
                    cpu_total += cpu
                    mem_total += mem
                    count += 1
                    log.debug("%s/%s [%s] sample %d: cpu=%dm memory=%dB",
                              ref.namespace, ref.name, cs.name, i + 1, cpu, mem)

            sleep(interval)

        avg = UsageAverage(name=name)
        if count > 0:
            avg.cpu_milli = cpu_total // count
            avg.memory_bytes = mem_total // count
        span.set_attribute("sampler.cpu_milli", avg.cpu_milli)
        span.set_attribute("sampler.memory_bytes", avg.memory_bytes)
    return avg


# ────────────  Run  ────────────
def run(v1: client.CoreV1Api, co: client.CustomObjectsApi, input_path: str, output_path: str,
        samples: int = DEFAULT_SAMPLES, interval: float = DEFAULT_INTERVAL,
        skip_header: bool = False, sleep: Callable[[float], None] = time.sleep) -> int:
    try:
        pods = list(read_pods(input_path, skip_header=skip_header))
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        sys.exit(f"Error reading pods file {input_path}: {e}")

    try:
        out = open(output_path, "w", newline="", encoding="utf-8")
    except OSError as e:
        sys.exit(f"Error creating metrics CSV file {output_path}: {e}")

    written = 0
    with out:
        writer = csv.writer(out)
        for ref in pods:
            log.info("Sampling pod: %s in namespace: %s", ref.name, ref.namespace)
            avg = sample_pod(v1, co, ref, samples=samples, interval=interval, sleep=sleep)
            if avg is None:
                continue
            try:
                writer.writerow(avg.to_row())
                out.flush()
                written += 1
            except (OSError, csv.Error) as e:
                log.error("Error writing metrics CSV row for %s: %s", avg.name, e)
            log.info("Finished sampling pod: %s in namespace: %s", ref.name, ref.namespace)

    log.info("All pods sampled. Average metrics exported to %s", output_path)
    return written


# ────── OpenTelemetry for the sampler's own spans ──────
def setup_tracing() -> TracerProvider:
    tp = TracerProvider(resource=Resource({"service.name": "pod-metrics-sampler"}))
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or os.getenv("OTEL_COLLECTOR_ENDPOINT")
    if endpoint:
        tp.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        log.info("Exporting spans to %s", endpoint)
    trace.set_tracer_provider(tp)
    return tp


# ───────  main  ───────
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser("pod-metrics-sampler",
                                 description="Average pod CPU/memory usage over a short sampling window.")
    ap.add_argument("--input", default=os.getenv("PODS_CSV", DEFAULT_INPUT),
                    help="CSV of <pod>,<namespace> rows (default: pods.csv)")
    ap.add_argument("--output", default=os.getenv("METRICS_CSV", DEFAULT_OUTPUT),
                    help="CSV to write averages to (default: metrics.csv)")
    ap.add_argument("--samples", type=int, default=os.getenv("SAMPLES", str(DEFAULT_SAMPLES)),
                    help="Metrics polls per pod (default: 5)")
    ap.add_argument("--interval", type=float, default=os.getenv("SAMPLE_INTERVAL_SECS", str(DEFAULT_INTERVAL)),
                    help="Seconds to sleep between polls (default: 1)")
    ap.add_argument("--kubeconfig",
                    help="Path to kubeconfig; if omitted, tries in-cluster then $KUBECONFIG or ~/.kube/config")
    ap.add_argument("--context", default=os.getenv("KUBE_CONTEXT"), help="kubeconfig context to use")
    ap.add_argument("--skip-header", action="store_true", help="Ignore the first row of the input CSV")
    return ap

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.samples < 0:
        sys.exit("--samples must be >= 0")

    try:
        v1, co = setup_k8s(args.kubeconfig, args.context)
    except ConfigException as e:
        sys.exit(f"Error building kubeconfig: {e}")

    tp = setup_tracing()
    try:
        run(v1, co, args.input, args.output,
            samples=args.samples, interval=args.interval, skip_header=args.skip_header)
    finally:
        tp.shutdown()
    return 0

if __name__ == "__main__":
    sys.exit(main())
