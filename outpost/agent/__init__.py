"""Outpost agent: the headless process that answers discovery requests.

Runs on the remote host as ``outpost-agent --stdio``, speaking the
:mod:`outpost.protocol` records over standard input/output.
"""

from outpost.agent.service import AgentService, State

__all__ = ["AgentService", "State"]
