import os

from prometheus_client import Counter, start_http_server


def init_metrics(logger):
    """Initialize Prometheus metrics if configured via env.

    Returns a dict with keys: enabled, checks, check_failures, updates,
    notification_failures. Counters are None when metrics are disabled.
    """
    result = {
        'enabled': False,
        'checks': None,
        'check_failures': None,
        'updates': None,
        'notification_failures': None,
    }
    port = os.getenv('METRICS_PORT')
    if not port:
        return result
    addr = os.getenv('METRICS_ADDR', '0.0.0.0')
    try:
        start_http_server(int(port), addr=addr)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to start metrics: {e}")
        return result
    result['checks'] = Counter('docker_notify_checks_total', 'Number of image checks performed')
    result['check_failures'] = Counter('docker_notify_check_failures_total', 'Number of image checks that failed')
    result['updates'] = Counter('docker_notify_updates_total', 'Number of image updates detected')
    result['notification_failures'] = Counter(
        'docker_notify_notification_failures_total', 'Number of notification actions that were not delivered'
    )
    result['enabled'] = True
    logger.info(f"Prometheus metrics server on {addr}:{port}")
    return result
