"""hellokube.

Runnable, single-node model of the smallest useful cluster workload:
 - a fixed-response HTTP responder packaged as a container image
 - a Deployment controller that reconciles pods toward a desired replica count
 - a Service router that forwards node/load-balancer ports to matching pods

The implementation is intentionally small so it can be audited and explained.
"""
