from beartype import BeartypeConf
from beartype.claw import beartype_this_package

conf = BeartypeConf(
    is_color=True,
    is_debug=False,
    is_pep484_tower=True,
    violation_type=TypeError,
)

beartype_this_package(conf=conf)

from .core import (
    GFI,
    Address,
    AddressCollision,
    AddressNotFound,
    AddrSel,
    AllSel,
    ChoiceMap,
    ComplSel,
    DimensionMismatch,
    Distribution,
    Fn,
    FnTr,
    GenTraceError,
    InSel,
    InvalidAddress,
    InvalidParameter,
    Map,
    MapTr,
    NoneSel,
    OrSel,
    Pytree,
    Selection,
    Tr,
    Trace,
    TypeMismatch,
    UnvisitedConstraintError,
    UnvisitedConstraintWarning,
    choice_map,
    distribution,
    gen,
    get_choices,
    get_retval,
    get_score,
    select,
    tfp_distribution,
    trace,
)
from .distributions import (
    bernoulli,
    beta,
    categorical,
    exponential,
    flip,
    gamma,
    multivariate_normal,
    normal,
    uniform,
    uniform_discrete,
)
from .inference import (
    MCMCResult,
    ParticleCollection,
    chain,
    cycle,
    importance_resampling,
    importance_sampling,
    mh,
    mh_kernel,
)

__all__ = [
    "GFI",
    "Address",
    "AddrSel",
    "AddressCollision",
    "AddressNotFound",
    "AllSel",
    "ChoiceMap",
    "ComplSel",
    "DimensionMismatch",
    "Distribution",
    "Fn",
    "FnTr",
    "GenTraceError",
    "InSel",
    "InvalidAddress",
    "InvalidParameter",
    "MCMCResult",
    "Map",
    "MapTr",
    "NoneSel",
    "OrSel",
    "ParticleCollection",
    "Pytree",
    "Selection",
    "Tr",
    "Trace",
    "TypeMismatch",
    "UnvisitedConstraintError",
    "UnvisitedConstraintWarning",
    "bernoulli",
    "beta",
    "categorical",
    "chain",
    "choice_map",
    "cycle",
    "distribution",
    "exponential",
    "flip",
    "gamma",
    "gen",
    "get_choices",
    "get_retval",
    "get_score",
    "importance_resampling",
    "importance_sampling",
    "mh",
    "mh_kernel",
    "multivariate_normal",
    "normal",
    "select",
    "tfp_distribution",
    "trace",
    "uniform",
    "uniform_discrete",
]
