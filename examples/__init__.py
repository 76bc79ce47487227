"""
PyMatAdd examples.

This module contains example scripts demonstrating element-wise matrix
addition with PyMatAdd.
"""

from examples.matrix_add import run_async_example, run_matrix_add_example

__all__ = [
    "run_matrix_add_example",
    "run_async_example",
]
