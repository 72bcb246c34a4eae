"""
xiops - Build, push, deploy and supervise a service rollout on AKS.

Submodules:
- xiops.config - .env discovery and the immutable project configuration
- xiops.errors - Exception hierarchy
- xiops.events - Event classification for the newest pod
- xiops.images - Image build/push and tag markers
- xiops.kubectl - kubectl wrapper used by every cluster-facing component
- xiops.manifests - Manifest rendering, apply, SPC and ConfigMap regeneration
- xiops.migrations - One-shot migration Job runner
- xiops.output - Shared console and logging setup
- xiops.pods - Pod observations and rollout snapshots
- xiops.recovery - Error recovery menu and policies
- xiops.render - Rich rendering of pod and deployment status
- xiops.steps - Named shell steps with live progress
- xiops.supervisor - Rollout supervisor poll loop
- xiops.workflow - The full deploy workflow
- xiops.cli - invoke Program exposing the tasks
"""

__version__ = "0.1.0"
