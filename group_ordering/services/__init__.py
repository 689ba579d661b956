"""
                        Services Module

Collaborators of the group-ordering engine, each with the hybrid
architecture pattern: a Mock (development) and a Real (production)
implementation behind one factory.

Services:
    - payment: Stripe charges and refunds
    - notifications: Redis pub/sub fan-out of session events
    - persistence: Session snapshot store (memory or SQLAlchemy)
    - group_orders: The external operations, bound by the API
"""
