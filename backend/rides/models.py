import uuid
from decimal import Decimal

from django.db import models

from common.utils import is_valid_coordinate
from drivers.models import DriverProfile
from .constants import RIDE_OPTION_CHOICES, CHARITY_CHOICES, DEFAULT_RIDE_OPTION


class RideRequest(models.Model):
    """A rider's order: route, price terms and lifecycle status"""

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('accepted', 'Accepted'),
        ('in_progress', 'In Progress'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    # Statuses that carry a driver assignment
    ASSIGNED_STATUSES = ('accepted', 'in_progress', 'completed')
    ASSIGNED_ACTIVE_STATUSES = ('accepted', 'in_progress')
    TERMINAL_STATUSES = ('completed', 'cancelled')

    driver = models.ForeignKey(
        DriverProfile,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='rides'
    )

    # Pickup location
    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_address = models.TextField(blank=True, default='')

    # Dropoff location
    dropoff_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    dropoff_longitude = models.DecimalField(max_digits=9, decimal_places=6)
    dropoff_address = models.TextField(blank=True, default='')

    # Price terms
    ride_option = models.CharField(max_length=20, choices=RIDE_OPTION_CHOICES, default=DEFAULT_RIDE_OPTION)
    ride_option_multiplier = models.DecimalField(max_digits=4, decimal_places=2, default=Decimal('1.00'))
    suggested_fare = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    final_fare = models.DecimalField(max_digits=10, decimal_places=2)

    # Route
    distance_km = models.FloatField(default=0)
    travel_time_minutes = models.PositiveIntegerField(default=0)

    charity = models.CharField(max_length=30, choices=CHARITY_CHOICES, blank=True, default='')

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending', db_index=True)

    # Retry key supplied by the rider's client
    client_request_id = models.CharField(max_length=64, unique=True, null=True, blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    trip_completed_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    cancelled_by = models.CharField(max_length=10, blank=True, default='')
    cancellation_reason = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'ride_requests'
        ordering = ['-created_at']

    def __str__(self):
        return f"Ride #{self.id} - {self.status} - Bs. {self.final_fare}"

    @property
    def is_chat_open(self):
        return self.status in self.ASSIGNED_ACTIVE_STATUSES

    def integrity_errors(self):
        """
        List the ways this row violates the ride invariants.

        Rows written through the coordinator never fail; rows written
        directly to the table might.
        """
        errors = []
        valid_statuses = {choice for choice, _ in self.STATUS_CHOICES}
        if self.status not in valid_statuses:
            errors.append(f"unknown status {self.status!r}")

        if self.final_fare is None or self.final_fare <= 0:
            errors.append("final_fare must be positive")

        has_driver = self.driver_id is not None
        if self.status in self.ASSIGNED_STATUSES and not has_driver:
            errors.append(f"status {self.status} requires a driver")
        if self.status not in self.ASSIGNED_STATUSES and has_driver:
            errors.append(f"status {self.status} must not have a driver")

        if not is_valid_coordinate(self.pickup_latitude, self.pickup_longitude):
            errors.append("invalid pickup coordinates")
        if not is_valid_coordinate(self.dropoff_latitude, self.dropoff_longitude):
            errors.append("invalid dropoff coordinates")
        return errors


class ChatMessage(models.Model):
    """Ride-scoped chat line; the whole log is dropped when the ride ends."""

    SENDER_CHOICES = [
        ('rider', 'Rider'),
        ('driver', 'Driver'),
    ]

    ride = models.ForeignKey(
        RideRequest,
        on_delete=models.CASCADE,
        related_name='chat_messages'
    )
    sender = models.CharField(max_length=10, choices=SENDER_CHOICES)
    text = models.TextField(max_length=1000)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'ride_chat_messages'
        ordering = ['id']

    def __str__(self):
        return f"Message #{self.id} - Ride {self.ride_id} - {self.sender}"


class CallSession(models.Model):
    """Signaling state for the single call a ride may have at a time."""

    STATUS_CHOICES = [
        ('none', 'None'),
        ('ringing', 'Ringing'),
        ('active', 'Active'),
        ('ended', 'Ended'),
    ]

    TYPE_CHOICES = [
        ('voice', 'Voice'),
        ('video', 'Video'),
    ]

    ride = models.OneToOneField(
        RideRequest,
        on_delete=models.CASCADE,
        related_name='call_session'
    )
    call_id = models.UUIDField(default=uuid.uuid4)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='none')
    call_type = models.CharField(max_length=10, choices=TYPE_CHOICES, default='voice')
    caller = models.CharField(max_length=10, blank=True, default='')

    started_at = models.DateTimeField(null=True, blank=True)
    answered_at = models.DateTimeField(null=True, blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'ride_call_sessions'

    def __str__(self):
        return f"Call {self.call_id} - Ride {self.ride_id} - {self.status}"
