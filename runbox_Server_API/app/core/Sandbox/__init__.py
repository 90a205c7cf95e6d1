"""Sandbox core module

Provisions short-lived container sandboxes: a workspace on the host, source
materialized into it, a runtime image, and one idle container bound to the
workspace. Work happens through execs; everything is torn down on dispose.

Backends (Docker, containerd) live under ``runtimes`` and are interchangeable
behind ``runtimes.base.ContainerRuntime``.
"""
