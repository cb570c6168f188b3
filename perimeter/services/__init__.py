from .clamav import ClamAVService
from .fail2ban import Fail2banService
from .falco import FalcoService
from .system import SystemAuditService
from .trivy import TrivyService
from .ufw import UfwService

DEFAULT_SERVICE_CLASSES = {
    "clamav": ClamAVService,
    "falco": FalcoService,
    "trivy": TrivyService,
    "ufw": UfwService,
    "fail2ban": Fail2banService,
    "system": SystemAuditService,
}

__all__ = [
    "ClamAVService",
    "Fail2banService",
    "FalcoService",
    "SystemAuditService",
    "TrivyService",
    "UfwService",
    "DEFAULT_SERVICE_CLASSES",
]
