"""Prometheus-style metrics, collectors and the health/metrics HTTP server."""