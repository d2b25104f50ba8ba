"""Order and inventory API for the gemstone shop."""

__version__ = "1.0.0"
