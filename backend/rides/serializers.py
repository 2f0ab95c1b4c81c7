from decimal import Decimal

from rest_framework import serializers

from drivers.serializers import DriverBasicSerializer
from .constants import RIDE_OPTIONS, CHARITIES, DEFAULT_RIDE_OPTION
from .models import RideRequest, ChatMessage, CallSession


class RideRequestSerializer(serializers.ModelSerializer):
    """Serializer for Ride Requests"""
    driver = DriverBasicSerializer(read_only=True)
    
    class Meta:
        model = RideRequest
        fields = ['id', 'driver', 'status',
                  'pickup_latitude', 'pickup_longitude', 'pickup_address',
                  'dropoff_latitude', 'dropoff_longitude', 'dropoff_address',
                  'ride_option', 'ride_option_multiplier', 'suggested_fare', 'final_fare',
                  'distance_km', 'travel_time_minutes', 'charity',
                  'created_at', 'updated_at', 'accepted_at', 'started_at',
                  'trip_completed_at', 'completed_at', 'cancelled_at',
                  'cancelled_by', 'cancellation_reason']
        read_only_fields = fields


class LocationSerializer(serializers.Serializer):
    """A map point chosen by the rider"""
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)
    address = serializers.CharField(required=False, allow_blank=True, default='')


class RideRequestCreateSerializer(serializers.Serializer):
    """Serializer for creating ride requests"""
    pickup = LocationSerializer()
    dropoff = LocationSerializer()
    final_fare = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal('0.01'))
    ride_option = serializers.ChoiceField(choices=list(RIDE_OPTIONS), default=DEFAULT_RIDE_OPTION)
    charity = serializers.ChoiceField(choices=list(CHARITIES), required=False, allow_blank=True, default='')
    client_request_id = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True)


class FareEstimateRequestSerializer(serializers.Serializer):
    pickup = LocationSerializer()
    dropoff = LocationSerializer()
    ride_option = serializers.ChoiceField(choices=list(RIDE_OPTIONS), default=DEFAULT_RIDE_OPTION)


class RideAcceptSerializer(serializers.Serializer):
    driver_id = serializers.IntegerField()


class RideCancelSerializer(serializers.Serializer):
    """Serializer for ride cancellation"""
    actor = serializers.ChoiceField(choices=['rider', 'driver'], default='rider')
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class RideDriverActionSerializer(serializers.Serializer):
    """Optional assigned-driver check for arrived / trip-complete"""
    driver_id = serializers.IntegerField(required=False, allow_null=True)


class RideAbandonSerializer(RideCancelSerializer):
    """Either party ends an assigned ride"""
    driver_id = serializers.IntegerField(required=False, allow_null=True)


class ChatMessageSerializer(serializers.ModelSerializer):
    class Meta:
        model = ChatMessage
        fields = ['id', 'ride', 'sender', 'text', 'created_at']
        read_only_fields = fields


class ChatPostSerializer(serializers.Serializer):
    sender = serializers.ChoiceField(choices=['rider', 'driver'])
    text = serializers.CharField(max_length=1000, trim_whitespace=True)


class CallSessionSerializer(serializers.ModelSerializer):
    class Meta:
        model = CallSession
        fields = ['ride', 'call_id', 'status', 'call_type', 'caller',
                  'started_at', 'answered_at', 'ended_at', 'updated_at']
        read_only_fields = fields


class CallActionSerializer(serializers.Serializer):
    role = serializers.ChoiceField(choices=['rider', 'driver'])
    call_type = serializers.ChoiceField(choices=['voice', 'video'], default='voice')
