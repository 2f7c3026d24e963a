"""Collaborators the circulation core talks to:

- audit trail sink
- notification broadcaster
- Razorpay payment gateway
- HTTP client abstraction
"""
