"""
Pure activity-tier kernels: fixed-point math, velocity signals, the EMA/tier
engine and the authorized override path.
"""
