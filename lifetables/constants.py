"""
Column names and numeric defaults shared across the life table functions.
"""

AGE_START = "age_start"
AGE_END = "age_end"
AGE_COLUMNS = (AGE_START, AGE_END)

# parameters derived by `lifetable`, in output order
PARAMETER_COLUMNS = ("mx", "ax", "qx", "px", "lx", "dx", "nLx", "Tx", "ex")

# columns that go stale once qx is rescaled
DERIVED_COLUMNS = ("mx", "px", "lx", "dx", "nLx", "Tx", "ex")

DEFAULT_RADIX = 1.0

# ax iteration
DEFAULT_AX_TOLERANCE = 1e-9
DEFAULT_AX_MAX_ITER = 100

# slack allowed by the validator for floating point sums and differences
DEFAULT_VALIDATION_TOLERANCE = 1e-6

# Coale-Demeny under-5 ax, regressed on infant mortality (mx at [0, 1)).
# Below the threshold ax = intercept + slope * m0, at or above it ax = high.
INFANT_MX_THRESHOLD = 0.107
COALE_DEMENY_U5_AX = {
    "male": {
        (0.0, 1.0): {"intercept": 0.045, "slope": 2.684, "high": 0.330},
        (1.0, 5.0): {"intercept": 1.651, "slope": -2.816, "high": 1.352},
    },
    "female": {
        (0.0, 1.0): {"intercept": 0.053, "slope": 2.800, "high": 0.350},
        (1.0, 5.0): {"intercept": 1.522, "slope": -1.518, "high": 1.361},
    },
}

# (label, age_start, age_end) of the compound probabilities in `gen_summary_lt`
SUMMARY_QX = (
    ("5q0", 0.0, 5.0),
    ("45q15", 15.0, 60.0),
)
