"""
Reservation lifecycle & availability engine.

Pure domain code: no FastAPI, no SQLAlchemy. Storage and notification
are injected through `ReservationStore` and `EventPublisher`.
"""
