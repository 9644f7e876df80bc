"""
Ledger System Module

Wires storage, ledger store, policies and services into a ready-to-use
ledger core.
"""

from typing import Optional

from .audit import ActivityLog
from .config import LedgerConfig, get_config
from .exchange import CurrencyConversionService
from .ledger import LedgerStore
from .limits import LimitPolicy
from .logging_config import get_logger, setup_logging
from .provisioning import AccountProvisioner
from .storage import StorageInterface, create_storage
from .transfers import TransferEngine
from .users import UserDirectory


class LedgerSystem:
    """Ledger core with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        conversion: Optional[CurrencyConversionService] = None,
        limit_policy: Optional[LimitPolicy] = None,
        configure_logging: bool = True
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, self.config.log_format)
        self.logger = get_logger("fxledger.system")

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        # Initialize core components
        self.activity_log = ActivityLog(self.storage)
        self.ledger = LedgerStore(self.storage)
        self.users = UserDirectory(self.ledger, self.activity_log)
        self.conversion = conversion or CurrencyConversionService.from_config(self.config)
        self.limit_policy = limit_policy or LimitPolicy()
        self.provisioner = AccountProvisioner(
            self.ledger, self.config, self.activity_log, self.users
        )
        self.engine = TransferEngine(
            self.ledger, self.limit_policy, self.conversion,
            self.users, self.activity_log, self.config
        )

        self.logger.info(f"Ledger core ready on {type(self.storage).__name__}")

    def close(self) -> None:
        if self.conversion.provider is not None:
            self.conversion.provider.close()
        self.storage.close()


def build_engine(config: Optional[LedgerConfig] = None,
                 storage: Optional[StorageInterface] = None) -> LedgerSystem:
    """Build the default ledger stack; ``system.engine`` is the transfer engine"""
    return LedgerSystem(config=config, storage=storage)
