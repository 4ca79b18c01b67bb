"""tusk_deploy — Remote environment reconciliation for a single gateway host.

Provides:
    - Target resolution (adopt-or-create an EC2 instance by identity tag)
    - Remote execution over SSM Run Command, with batched state probes
    - Credential recovery and local escrow
    - Ordered idempotent provisioning phases
    - Audit / repair of drift against the same fact table
"""

__version__ = "0.4.0"
