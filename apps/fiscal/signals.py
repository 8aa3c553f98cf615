"""
Signals sent by the fiscal app.

Sales live outside this app; listeners use ``sale_invoiced`` to mark their
own records or notify the point of sale.
"""

from django.dispatch import Signal

# ===============================================================================
# FISCAL SIGNALS
# ===============================================================================

# kwargs: sale_id, invoice
sale_invoiced = Signal()
