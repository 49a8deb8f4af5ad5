"""Grey-box identification of a three-block thermal system.

Temperatures (~20 degC), heat capacities (~1e3 J/K) and 1e-6 tolerances need
double precision, so x64 is switched on before any array is created.
"""

import jax

jax.config.update("jax_enable_x64", True)

__version__ = "0.1.0"
