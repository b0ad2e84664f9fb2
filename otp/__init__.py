"""otp/ -- One-time login codes: the expiring code store and the delivery boundary.

Layer rule: otp/ imports only stdlib. auth/ and api/ import from otp/, not
the other way around.
"""
