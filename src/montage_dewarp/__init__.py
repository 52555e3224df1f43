"""Montage dewarp parameter estimation package"""

__version__ = '0.1.0'
