"""Model shortcuts for the FastAPI app."""

from .tenant_models import (  # noqa: F401
    Message,
    Tenant,
    TenantCreate,
    TenantPublic,
    TenantUpdate,
)
from .fleet_models import (  # noqa: F401
    TaskReorder,
    TaskType,
    Van,
    VanCreate,
    VanLocationUpdate,
    VanPublic,
    VansPublic,
    VanStatus,
    VanTask,
    VanTaskCreate,
    VanTaskPublic,
)
from .ride_models import (  # noqa: F401
    Ride,
    RideAssign,
    RideCancel,
    RideCreate,
    RidePublic,
    RidesPublic,
    RideStatus,
)
from .optimization_models import (  # noqa: F401
    Coordinate,
    EtaResult,
    InsertionCandidate,
    OptimizationResult,
    OptimizationSummary,
    OptimizerState,
    OptimizerStatus,
    RideAssignment,
    RideInput,
    TaskOrder,
    VanInput,
    VanSuggestion,
    VanTaskOrder,
)
