"""cibisect - resumable git bisection driven by CI builds."""

__version__ = "1.0.0"
