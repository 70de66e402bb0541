"""Outpost: remote host discovery over SSH.

Gets the right agent onto a host, keeps a local record of its state, and
runs a discovery battery against it.

Quickstart::

    from outpost.config import OutpostConfig
    from outpost.deploy import DeploymentManager, Connected
    from outpost.discovery import DiscoveryOrchestrator

    manager = DeploymentManager.from_config(OutpostConfig.load_default())
    outcome = await manager.connect("web1")
    if isinstance(outcome, Connected):
        async with outcome.session:
            result = await DiscoveryOrchestrator().run(outcome.session)
"""

__version__ = "1.2.0"

PRODUCT = "outpost"
AGENT_BINARY = "outpost-agent"
