"""PolicyGuard: keeps policy servers and admission policies converged."""

__version__ = "0.1.0"
