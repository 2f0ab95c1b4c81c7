import logging

from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from realtime.broadcast import pending_rides_snapshot
from services.communication import chat_relay, call_signaling
from services.messaging import generate_confirmation_message
from services.pricing import FareEstimator, FareEstimationError
from services.ride_management import (
    create_ride_request as create_ride,
    accept_ride as accept,
    cancel_ride as cancel,
    mark_driver_arrived,
    signal_trip_complete,
    complete_ride as complete,
    abandon_ride as abandon,
    get_ride,
)
from services.ride_management.exceptions import (
    RideValidationError,
    RideNotFoundError,
    RideNotAvailableError,
    CorruptRideError,
    DriverNotFoundError,
    DriverNotAvailableError,
    ChatClosedError,
    CallStateError,
)
from services.routing import NominatimGeocoder, GeocodingError
from .constants import RIDE_OPTIONS, CHARITIES, get_multiplier
from .serializers import (
    RideRequestSerializer,
    FareEstimateRequestSerializer,
    RideAcceptSerializer,
    RideCancelSerializer,
    RideAbandonSerializer,
    RideDriverActionSerializer,
    ChatMessageSerializer,
    ChatPostSerializer,
    CallActionSerializer,
)

logger = logging.getLogger(__name__)

SERVICE_ERRORS = (
    RideValidationError,
    RideNotFoundError,
    RideNotAvailableError,
    CorruptRideError,
    DriverNotFoundError,
    DriverNotAvailableError,
    ChatClosedError,
    CallStateError,
    FareEstimationError,
    GeocodingError,
)


def _error(error, message, http_status, **extra):
    return Response(
        {'success': False, 'error': error, 'message': message, **extra},
        status=http_status
    )


def _service_error_response(exc):
    """Translate a service-layer exception into the API error body."""
    if isinstance(exc, RideValidationError):
        return _error('validation_error', str(exc), status.HTTP_400_BAD_REQUEST,
                      missing=exc.missing, details=exc.details)
    if isinstance(exc, RideNotFoundError):
        return _error('ride_not_found', str(exc), status.HTTP_404_NOT_FOUND)
    if isinstance(exc, RideNotAvailableError):
        return _error('ride_not_available', str(exc), status.HTTP_409_CONFLICT)
    if isinstance(exc, DriverNotFoundError):
        return _error('driver_not_found', str(exc), status.HTTP_404_NOT_FOUND)
    if isinstance(exc, DriverNotAvailableError):
        return _error('driver_not_available', str(exc), status.HTTP_409_CONFLICT)
    if isinstance(exc, ChatClosedError):
        return _error('chat_closed', str(exc), status.HTTP_409_CONFLICT)
    if isinstance(exc, CallStateError):
        return _error('call_state_conflict', str(exc), status.HTTP_409_CONFLICT)
    if isinstance(exc, FareEstimationError):
        return _error('fare_unavailable', str(exc), status.HTTP_503_SERVICE_UNAVAILABLE, retryable=True)
    if isinstance(exc, GeocodingError):
        return _error('geocoding_failed', str(exc), status.HTTP_502_BAD_GATEWAY, retryable=True)
    # CorruptRideError: already logged by the store
    return _error('corrupt_ride', 'Ride data is invalid', status.HTTP_500_INTERNAL_SERVER_ERROR)


def _ride_response(result, http_status=status.HTTP_200_OK, **extra):
    return Response({
        'success': True,
        'ride': RideRequestSerializer(result.ride).data,
        'message': result.message,
        **(result.extra or {}),
        **extra,
    }, status=http_status)


# ==================== Rider Ride APIs ====================

@api_view(['GET', 'POST'])
def rides_collection(request):
    """
    GET: pending rides (POLLING ENDPOINT for driver dashboards)
    POST: book a ride
    """
    if request.method == 'GET':
        rides = pending_rides_snapshot()
        return Response({'count': len(rides), 'rides': rides})

    client_request_id = request.headers.get('Idempotency-Key')
    try:
        result = create_ride(request.data, client_request_id=client_request_id)
    except SERVICE_ERRORS as e:
        return _service_error_response(e)

    replayed = (result.extra or {}).get('replayed', False)
    return _ride_response(result, status.HTTP_200_OK if replayed else status.HTTP_201_CREATED)


@api_view(['GET'])
def ride_options(request):
    """Ride tiers and charities the rider can pick from."""
    return Response({
        'ride_options': [
            {'id': key, 'name': value['name'], 'multiplier': str(value['multiplier']),
             'description': value['description']}
            for key, value in RIDE_OPTIONS.items()
        ],
        'charities': [
            {'id': key, **value} for key, value in CHARITIES.items()
        ],
    })


@api_view(['POST'])
def estimate_fare(request):
    """Route distance, travel time and suggested fare for a pickup/dropoff pair."""
    serializer = FareEstimateRequestSerializer(data=request.data)
    if not serializer.is_valid():
        missing = list(serializer.errors.keys())
        return _error('validation_error', 'Pickup and dropoff are required', status.HTTP_400_BAD_REQUEST,
                      missing=missing, details=serializer.errors)

    data = serializer.validated_data
    try:
        estimate = FareEstimator().estimate(
            (data['pickup']['lat'], data['pickup']['lng']),
            (data['dropoff']['lat'], data['dropoff']['lng']),
            get_multiplier(data['ride_option']),
        )
    except FareEstimationError as e:
        return _service_error_response(e)

    return Response({
        'success': True,
        'ride_option': data['ride_option'],
        **estimate.as_dict(),
    })


@api_view(['GET', 'DELETE'])
def ride_detail(request, ride_id):
    """
    GET: authoritative ride snapshot (POLLING ENDPOINT for ride sessions)
    DELETE: rider cancels a pending ride
    """
    try:
        if request.method == 'DELETE':
            result = cancel(ride_id, actor='rider', reason=request.query_params.get('reason', ''))
            return _ride_response(result)

        ride = get_ride(ride_id)
    except SERVICE_ERRORS as e:
        return _service_error_response(e)

    return Response({'success': True, 'ride': RideRequestSerializer(ride).data})


@api_view(['POST'])
def cancel_ride(request, ride_id):
    """Cancel a pending ride (rider or driver)."""
    serializer = RideCancelSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        result = cancel(
            ride_id,
            actor=serializer.validated_data['actor'],
            reason=serializer.validated_data.get('reason', ''),
        )
    except SERVICE_ERRORS as e:
        return _service_error_response(e)

    return _ride_response(result)


# ==================== Driver Ride Actions ====================

@api_view(['POST'])
def accept_ride(request, ride_id):
    """Claim a pending ride. Exactly one driver wins; the rest get 409."""
    serializer = RideAcceptSerializer(data=request.data)
    if not serializer.is_valid():
        return _error('validation_error', 'driver_id is required', status.HTTP_400_BAD_REQUEST,
                      missing=['driver_id'], details=serializer.errors)

    try:
        result = accept(ride_id, serializer.validated_data['driver_id'])
    except SERVICE_ERRORS as e:
        return _service_error_response(e)

    return _ride_response(result)


def _driver_id_or_error(request):
    serializer = RideDriverActionSerializer(data=request.data)
    if not serializer.is_valid():
        return None, _error('validation_error', 'driver_id must be a driver id', status.HTTP_400_BAD_REQUEST,
                            missing=['driver_id'], details=serializer.errors)
    return serializer.validated_data.get('driver_id'), None


@api_view(['POST'])
def driver_arrived(request, ride_id):
    driver_id, error_response = _driver_id_or_error(request)
    if error_response is not None:
        return error_response
    try:
        result = mark_driver_arrived(ride_id, driver_id=driver_id)
    except SERVICE_ERRORS as e:
        return _service_error_response(e)
    return _ride_response(result)


@api_view(['POST'])
def trip_complete(request, ride_id):
    """Driver reached the destination; rider is asked to pay."""
    driver_id, error_response = _driver_id_or_error(request)
    if error_response is not None:
        return error_response
    try:
        result = signal_trip_complete(ride_id, driver_id=driver_id)
    except SERVICE_ERRORS as e:
        return _service_error_response(e)
    return _ride_response(result)


@api_view(['POST'])
def complete_ride(request, ride_id):
    """Rider confirmed payment. Safe to repeat."""
    try:
        result = complete(ride_id)
    except SERVICE_ERRORS as e:
        return _service_error_response(e)
    return _ride_response(result)


@api_view(['POST'])
def abandon_ride(request, ride_id):
    """Rider or driver walks away from an assigned ride; the driver is released."""
    serializer = RideAbandonSerializer(data=request.data)
    if not serializer.is_valid():
        return _error('validation_error', 'Invalid abandon request', status.HTTP_400_BAD_REQUEST,
                      missing=list(serializer.errors.keys()), details=serializer.errors)

    data = serializer.validated_data
    try:
        result = abandon(
            ride_id,
            actor=data['actor'],
            reason=data.get('reason', ''),
            driver_id=data.get('driver_id'),
        )
    except SERVICE_ERRORS as e:
        return _service_error_response(e)
    return _ride_response(result)


# ==================== Chat & Calls ====================

@api_view(['GET', 'POST'])
def ride_chat(request, ride_id):
    try:
        if request.method == 'GET':
            after_id = request.query_params.get('after')
            messages = chat_relay.list_messages(ride_id, after_id=int(after_id) if after_id else None)
            return Response({
                'count': len(messages),
                'messages': ChatMessageSerializer(messages, many=True).data,
            })

        serializer = ChatPostSerializer(data=request.data)
        if not serializer.is_valid():
            return _error('validation_error', 'sender and text are required', status.HTTP_400_BAD_REQUEST,
                          missing=list(serializer.errors.keys()), details=serializer.errors)
        message = chat_relay.post_message(
            ride_id,
            serializer.validated_data['sender'],
            serializer.validated_data['text'],
        )
    except ValueError:
        return _error('validation_error', 'after must be a message id', status.HTTP_400_BAD_REQUEST,
                      missing=['after'])
    except SERVICE_ERRORS as e:
        return _service_error_response(e)

    return Response(
        {'success': True, 'message': ChatMessageSerializer(message).data},
        status=status.HTTP_201_CREATED
    )


@api_view(['GET'])
def ride_call(request, ride_id):
    try:
        return Response({'success': True, 'call': call_signaling.get_call_state(ride_id)})
    except SERVICE_ERRORS as e:
        return _service_error_response(e)


@api_view(['POST'])
def ride_call_action(request, ride_id, action):
    """initiate / answer / end the ride's call."""
    serializer = CallActionSerializer(data=request.data)
    if not serializer.is_valid():
        return _error('validation_error', 'role is required', status.HTTP_400_BAD_REQUEST,
                      missing=list(serializer.errors.keys()), details=serializer.errors)
    role = serializer.validated_data['role']

    try:
        if action == 'initiate':
            call = call_signaling.initiate_call(ride_id, role, serializer.validated_data['call_type'])
        elif action == 'answer':
            call = call_signaling.answer_call(ride_id, role)
        elif action == 'end':
            call = call_signaling.end_call(ride_id, role)
        else:
            return _error('unknown_action', f'Unknown call action: {action}', status.HTTP_404_NOT_FOUND)
    except SERVICE_ERRORS as e:
        return _service_error_response(e)

    return Response({'success': True, 'call': call})


@api_view(['GET'])
def ride_confirmation(request, ride_id):
    """Cosmetic confirmation phrase shown after payment."""
    lang = request.query_params.get('lang', 'es')
    try:
        ride = get_ride(ride_id)
    except SERVICE_ERRORS as e:
        return _service_error_response(e)

    charity_name = CHARITIES.get(ride.charity, {}).get('name', '')
    message = generate_confirmation_message(ride.final_fare, charity_name=charity_name, lang=lang)
    return Response({'success': True, 'ride_id': ride.id, 'message': message})


# ==================== Geocoding Proxy ====================

@api_view(['GET'])
def reverse_geocode(request):
    lat = request.query_params.get('lat')
    lng = request.query_params.get('lng')
    lang = request.query_params.get('lang', 'es')
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        return _error('validation_error', 'lat and lng are required', status.HTTP_400_BAD_REQUEST,
                      missing=['lat', 'lng'])

    try:
        return Response(NominatimGeocoder().reverse(lat, lng, lang=lang))
    except GeocodingError as e:
        return _service_error_response(e)


@api_view(['GET'])
def search_places(request):
    query = request.query_params.get('q', '')
    lang = request.query_params.get('lang', 'es')
    try:
        results = NominatimGeocoder().search(query, lang=lang)
    except GeocodingError as e:
        return _service_error_response(e)
    return Response({'count': len(results), 'results': results})
