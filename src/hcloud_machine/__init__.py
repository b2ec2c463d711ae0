"""
hcloud-machine: Hetzner Cloud machine driver.

Provisions, queries, power-cycles and tears down Hetzner Cloud servers
on behalf of a cluster-lifecycle host (Docker Machine / Rancher style
driver contract).
"""

import os

__version__ = "0.1.0"

MACHINE_HOME_ENV = "HCLOUD_MACHINE_HOME"
MACHINE_HOME = os.environ.get(MACHINE_HOME_ENV, "~/.hcloud-machine")
