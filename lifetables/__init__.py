"""
Demographic life tables on polars frames: parameter conversions, ax
estimation, complete life table construction, aggregation across age groups,
and validation.
"""
