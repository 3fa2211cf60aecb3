"""
Energy Kernel

Domain core of the renewable-energy allocation and settlement system:
- Period model and unit normalization
- Production / consumption records and settlement entries
- Typed exceptions and structured logging
"""

__version__ = "0.1.0"
