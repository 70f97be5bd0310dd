"""
obspipe: recipe driven reduction of instrument observations
"""

__version__ = '0.3.0'
