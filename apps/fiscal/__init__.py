"""
AFIP electronic invoicing: WSAA authentication and WSFEv1 voucher authorization.
"""
