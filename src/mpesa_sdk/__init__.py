# mpesa_sdk package
__version__ = "0.1.0"

from .config import MpesaSettings, configure_logging
from .errors import (
    MpesaError,
    ValidationError,
    AuthError,
    GatewayError,
    GatewayTimeoutError,
    TransactionNotFound,
    GatewayIdConflict,
)
from .store import (
    TransactionStore,
    TransactionRecord,
    TransactionStatus,
    TokenIdGenerator,
    SequentialIdGenerator,
)
from .services import TransactionService, InitiationResult, CallbackOutcome

# Gateway exports
from .gateway import (
    TokenProvider,
    StkPushGateway,
    DarajaTokenProvider,
    DarajaGateway,
    SimulatorGateway,
    SimulatorConfig,
    CALLBACK_ACK,
    get_gateway,
)
