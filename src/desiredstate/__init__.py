"""
desiredstate: single-node deployment reconciliation agent.

Pulls a desired-state manifest from an OCI registry, verifies every
package it references, and drives the local docker-compose deployments
toward that manifest. Anything not listed gets purged.
"""

import os

__version__ = "0.1.0"

AGENT_HOME = os.environ.get("DESIREDSTATE_HOME", "~/.desiredstate")
