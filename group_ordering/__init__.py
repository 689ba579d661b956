"""
                Group Ordering Service

A high-concurrency backend for shared restaurant carts: one group order per
table, joined by a short code, split and charged across every diner, with a
hybrid Mock/Real collaborator architecture.

Author: Khalil_Bannouri
Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
__author__ = "Khalil_Bannouri"
