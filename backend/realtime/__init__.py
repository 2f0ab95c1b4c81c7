"""
Realtime app for WebSocket ride rooms and the driver dashboard feed.

Key Components:
    - broadcast.py: event construction and group fan-out
    - consumers/: WebSocket consumers (driver dashboard, ride room)
    - routing.py: WebSocket URL patterns

Usage:
    from realtime import broadcast
    broadcast.publish_pending_rides()
    broadcast.publish_ride_event(ride, "ride_accepted", "Your driver is on the way.")
"""
