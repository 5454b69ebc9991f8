"""
Queue-driven autoscaler for worker pools.

Each cycle reads queue metrics for a pool, decides whether to add or remove
workers, and applies the new count through a platform adapter (Heroku,
Kubernetes or ECS), guarded by a distributed lock and per-direction cooldowns.
"""

__version__ = "0.3.0"
