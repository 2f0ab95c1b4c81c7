from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import requests
from django.test import TestCase, override_settings

from drivers.models import DriverProfile
from rides.models import CallSession, ChatMessage, RideRequest
from rides.tasks import auto_answer_call_task, simulated_chat_reply_task
from services.communication import call_signaling, chat_relay
from services.messaging import generate_confirmation_message
from services.pricing import FareEstimator, FareEstimationError
from services.ride_management import accept_ride, create_ride_request
from services.ride_management.exceptions import (
	CallStateError,
	ChatClosedError,
	RideNotAvailableError,
	RideNotFoundError,
	RideValidationError,
)
from services.routing import (
	GoogleDirectionsService,
	NominatimGeocoder,
	GeocodingError,
	NoRouteFoundError,
	RouteInfo,
	RoutingUnavailableError,
)

PICKUP = (-16.5000, -68.1500)
DROPOFF = (-16.5100, -68.1300)


def make_ride(**fields):
	values = {
		'pickup_latitude': Decimal('-16.500000'),
		'pickup_longitude': Decimal('-68.150000'),
		'dropoff_latitude': Decimal('-16.510000'),
		'dropoff_longitude': Decimal('-68.130000'),
		'final_fare': Decimal('30.00'),
		'status': 'pending',
	}
	values.update(fields)
	return RideRequest.objects.create(**values)


def active_ride():
	driver = DriverProfile.objects.create(name='Carlos R.', license_plate='9876-DEF', status='busy')
	return make_ride(status='accepted', driver=driver)


class StubRouting:
	"""Routing collaborator that returns or raises whatever it was given."""

	def __init__(self, result=None, configured=True):
		self.result = result
		self.is_configured = configured
		self.calls = 0

	def get_route(self, *args):
		self.calls += 1
		if isinstance(self.result, Exception):
			raise self.result
		return self.result


class FareEstimatorTests(TestCase):
	def test_suggested_fare_uses_route_distance_and_multiplier(self):
		routing = StubRouting(RouteInfo(distance_km=10.0, duration_minutes=17.6, polyline='abc'))
		estimator = FareEstimator(routing=routing, base_rate_per_km=3.80)

		estimate = estimator.estimate(PICKUP, DROPOFF, Decimal('1.5'))

		self.assertEqual(estimate.suggested_fare, 57.0)
		self.assertEqual(estimate.travel_time_minutes, 18)
		self.assertEqual(estimate.source, 'routing')
		self.assertEqual(estimate.polyline, 'abc')

	def test_fare_is_rounded_to_cents(self):
		routing = StubRouting(RouteInfo(distance_km=3.333, duration_minutes=8))
		estimate = FareEstimator(routing=routing, base_rate_per_km=3.80).estimate(PICKUP, DROPOFF)

		self.assertEqual(estimate.suggested_fare, 12.67)

	def test_same_point_costs_nothing_and_skips_routing(self):
		routing = StubRouting(RouteInfo(distance_km=1, duration_minutes=1))
		estimate = FareEstimator(routing=routing).estimate(PICKUP, PICKUP, 2)

		self.assertEqual((estimate.distance_km, estimate.travel_time_minutes, estimate.suggested_fare), (0.0, 0, 0.0))
		self.assertEqual(routing.calls, 0)

	def test_unavailable_routing_falls_back_to_straight_line(self):
		routing = StubRouting(RoutingUnavailableError('timeout'))
		estimator = FareEstimator(routing=routing, base_rate_per_km=3.80, average_speed_kmh=25)

		with self.assertLogs('services.pricing.fare', level='WARNING'):
			estimate = estimator.estimate(PICKUP, DROPOFF)

		self.assertEqual(estimate.source, 'fallback')
		self.assertGreater(estimate.distance_km, 2)
		self.assertEqual(estimate.travel_time_minutes, round(estimate.distance_km / 25 * 60))

	def test_no_route_is_a_retryable_error(self):
		estimator = FareEstimator(routing=StubRouting(NoRouteFoundError('ZERO_RESULTS')))

		with self.assertRaises(FareEstimationError) as ctx:
			estimator.estimate(PICKUP, DROPOFF)
		self.assertTrue(ctx.exception.retryable)


class GoogleDirectionsServiceTests(TestCase):
	def setUp(self):
		self.service = GoogleDirectionsService(api_key='test-key', timeout=5)

	@patch('services.routing.directions.requests.get')
	def test_get_route_success(self, mock_get):
		mock_response = MagicMock()
		mock_response.json.return_value = {
			'status': 'OK',
			'routes': [{
				'legs': [{'distance': {'value': 4200}, 'duration': {'value': 630}}],
				'overview_polyline': {'points': 'encoded'},
			}],
		}
		mock_get.return_value = mock_response

		route = self.service.get_route(*PICKUP, *DROPOFF)

		self.assertEqual(route.distance_km, 4.2)
		self.assertEqual(route.duration_minutes, 10.5)
		self.assertEqual(route.polyline, 'encoded')
		self.assertEqual(mock_get.call_args[1]['timeout'], 5)

	@patch('services.routing.directions.requests.get')
	def test_zero_results_means_no_route(self, mock_get):
		mock_get.return_value.json.return_value = {'status': 'ZERO_RESULTS', 'routes': []}

		with self.assertRaises(NoRouteFoundError):
			self.service.get_route(*PICKUP, *DROPOFF)

	@patch('services.routing.directions.requests.get', side_effect=requests.Timeout('slow'))
	def test_timeout_means_unavailable(self, mock_get):
		with self.assertRaises(RoutingUnavailableError):
			self.service.get_route(*PICKUP, *DROPOFF)

	@patch('services.routing.directions.requests.get')
	def test_denied_request_means_unavailable(self, mock_get):
		mock_get.return_value.json.return_value = {'status': 'REQUEST_DENIED', 'error_message': 'bad key'}

		with self.assertRaises(RoutingUnavailableError):
			self.service.get_route(*PICKUP, *DROPOFF)

	def test_missing_api_key(self):
		service = GoogleDirectionsService(api_key='')
		self.assertFalse(service.is_configured)
		with self.assertRaises(RoutingUnavailableError):
			service.get_route(*PICKUP, *DROPOFF)


class NominatimGeocoderTests(TestCase):
	def setUp(self):
		self.geocoder = NominatimGeocoder(base_url='https://nominatim.test', timeout=3)

	@patch('services.routing.geocoding.requests.get')
	def test_reverse_returns_display_name(self, mock_get):
		mock_get.return_value.json.return_value = {'display_name': 'Plaza Murillo, La Paz'}

		result = self.geocoder.reverse(-16.4957, -68.1335, lang='es')

		self.assertEqual(result['address'], 'Plaza Murillo, La Paz')
		self.assertEqual(mock_get.call_args[1]['headers']['Accept-Language'], 'es')
		self.assertEqual(mock_get.call_args[0][0], 'https://nominatim.test/reverse')

	@patch('services.routing.geocoding.requests.get')
	def test_reverse_without_match_says_not_found(self, mock_get):
		mock_get.return_value.json.return_value = {'error': 'Unable to geocode'}

		self.assertEqual(self.geocoder.reverse(0, 0)['address'], 'Address not found')

	@patch('services.routing.geocoding.requests.get')
	def test_short_search_does_not_call_service(self, mock_get):
		self.assertEqual(self.geocoder.search('ab'), [])
		mock_get.assert_not_called()

	@patch('services.routing.geocoding.requests.get')
	def test_search_skips_malformed_results(self, mock_get):
		mock_get.return_value.json.return_value = [
			{'lat': '-16.5', 'lon': '-68.15', 'display_name': 'Sopocachi'},
			{'display_name': 'no coordinates'},
		]

		results = self.geocoder.search('Sopocachi')

		self.assertEqual(results, [{'lat': -16.5, 'lng': -68.15, 'address': 'Sopocachi'}])

	@patch('services.routing.geocoding.requests.get', side_effect=requests.ConnectionError('down'))
	def test_network_failure_raises(self, mock_get):
		with self.assertRaises(GeocodingError):
			self.geocoder.search('Sopocachi')


class CreateRideRequestTests(TestCase):
	def test_estimate_is_computed_before_insert(self):
		estimator = FareEstimator(routing=StubRouting(RouteInfo(distance_km=5, duration_minutes=12)))
		result = create_ride_request({
			'pickup': {'lat': PICKUP[0], 'lng': PICKUP[1]},
			'dropoff': {'lat': DROPOFF[0], 'lng': DROPOFF[1]},
			'final_fare': '15.50',
			'ride_option': 'flete',
		}, estimator=estimator)

		ride = result.ride
		self.assertEqual(ride.status, 'pending')
		self.assertEqual(ride.suggested_fare, Decimal('38.00'))
		self.assertEqual(ride.final_fare, Decimal('15.50'))
		self.assertEqual(ride.ride_option_multiplier, Decimal('2.0'))
		self.assertEqual(ride.travel_time_minutes, 12)

	def test_unknown_ride_option_is_validation_error(self):
		with self.assertRaises(RideValidationError) as ctx:
			create_ride_request({
				'pickup': {'lat': PICKUP[0], 'lng': PICKUP[1]},
				'dropoff': {'lat': DROPOFF[0], 'lng': DROPOFF[1]},
				'final_fare': '10',
				'ride_option': 'helicopter',
			})
		self.assertEqual(ctx.exception.missing, ['ride_option'])


class ChatRelayTests(TestCase):
	def setUp(self):
		self.ride = active_ride()

	@patch('realtime.broadcast.publish_to_ride')
	def test_post_message_publishes_after_commit(self, mock_publish):
		with self.captureOnCommitCallbacks(execute=True):
			message = chat_relay.post_message(self.ride.id, 'rider', '  Estoy en la esquina  ')

		self.assertEqual(message.text, 'Estoy en la esquina')
		args, kwargs = mock_publish.call_args
		self.assertEqual(args, (self.ride.id, 'chat_message'))
		self.assertEqual(kwargs['message']['id'], message.id)
		self.assertEqual(kwargs['message']['sender'], 'rider')

	def test_empty_and_oversized_messages_are_rejected(self):
		with self.assertRaises(RideValidationError):
			chat_relay.post_message(self.ride.id, 'rider', '   ')
		with self.assertRaises(RideValidationError):
			chat_relay.post_message(self.ride.id, 'rider', 'x' * (chat_relay.MAX_MESSAGE_LENGTH + 1))
		with self.assertRaises(RideValidationError):
			chat_relay.post_message(self.ride.id, 'dispatcher', 'hi')

	def test_chat_closed_for_pending_and_finished_rides(self):
		with self.assertRaises(ChatClosedError):
			chat_relay.post_message(make_ride().id, 'rider', 'hi')
		RideRequest.objects.filter(id=self.ride.id).update(status='completed')
		with self.assertRaises(ChatClosedError):
			chat_relay.post_message(self.ride.id, 'driver', 'hi')

	def test_unknown_ride(self):
		with self.assertRaises(RideNotFoundError):
			chat_relay.post_message(999999, 'rider', 'hi')

	@override_settings(CHAT_AUTO_REPLY_ENABLED=True, CHAT_AUTO_REPLY_DELAY_SECONDS=1.5)
	@patch('rides.tasks.simulated_chat_reply_task.apply_async')
	def test_rider_message_schedules_simulated_reply_when_enabled(self, mock_apply):
		chat_relay.post_message(self.ride.id, 'rider', 'hola')
		chat_relay.post_message(self.ride.id, 'driver', 'hola')

		mock_apply.assert_called_once_with(args=[self.ride.id], countdown=1.5)

	def test_simulated_reply_task_posts_canned_text(self):
		self.assertTrue(simulated_chat_reply_task(self.ride.id))
		self.assertEqual(ChatMessage.objects.get(ride=self.ride).text, chat_relay.AUTO_REPLY_TEXT)

	def test_simulated_reply_task_skips_closed_chat(self):
		RideRequest.objects.filter(id=self.ride.id).update(status='completed')
		self.assertFalse(simulated_chat_reply_task(self.ride.id))


class CallSignalingTests(TestCase):
	def setUp(self):
		self.ride = active_ride()

	def test_no_call_reads_as_none(self):
		self.assertEqual(call_signaling.get_call_state(self.ride.id)['status'], 'none')

	@patch('rides.tasks.auto_answer_call_task.apply_async')
	def test_initiate_rings_and_schedules_auto_answer(self, mock_apply):
		with self.captureOnCommitCallbacks(execute=True):
			state = call_signaling.initiate_call(self.ride.id, 'rider', 'voice')

		self.assertEqual(state['status'], 'ringing')
		self.assertEqual(state['caller'], 'rider')
		mock_apply.assert_called_once_with(args=[self.ride.id, state['call_id']], countdown=3)

	def test_second_call_while_ringing_is_rejected(self):
		call_signaling.initiate_call(self.ride.id, 'rider')
		with self.assertRaises(CallStateError):
			call_signaling.initiate_call(self.ride.id, 'driver')

	def test_caller_cannot_answer_own_call(self):
		call_signaling.initiate_call(self.ride.id, 'driver')
		with self.assertRaises(CallStateError):
			call_signaling.answer_call(self.ride.id, 'driver')
		self.assertEqual(call_signaling.answer_call(self.ride.id, 'rider')['status'], 'active')

	def test_ended_call_can_be_replaced_by_a_new_one(self):
		first = call_signaling.initiate_call(self.ride.id, 'rider')
		call_signaling.end_call(self.ride.id, 'driver')
		second = call_signaling.initiate_call(self.ride.id, 'driver', 'video')

		self.assertNotEqual(first['call_id'], second['call_id'])
		self.assertEqual(second['status'], 'ringing')
		self.assertIsNone(second['answered_at'])

	def test_end_without_call_is_rejected(self):
		with self.assertRaises(CallStateError):
			call_signaling.end_call(self.ride.id, 'rider')

	def test_calls_need_an_active_ride(self):
		with self.assertRaises(CallStateError):
			call_signaling.initiate_call(make_ride().id, 'rider')

	def test_auto_answer_only_applies_to_the_same_ringing_call(self):
		first = call_signaling.initiate_call(self.ride.id, 'rider')
		call_signaling.end_call(self.ride.id, 'rider')
		self.assertFalse(call_signaling.auto_answer(self.ride.id, first['call_id']))
		self.assertEqual(call_signaling.get_call_state(self.ride.id)['status'], 'ended')

		second = call_signaling.initiate_call(self.ride.id, 'rider')
		self.assertFalse(call_signaling.auto_answer(self.ride.id, first['call_id']))
		self.assertTrue(auto_answer_call_task(self.ride.id, second['call_id']))
		self.assertEqual(call_signaling.get_call_state(self.ride.id)['status'], 'active')

	def test_completion_clears_call_state(self):
		call_signaling.initiate_call(self.ride.id, 'rider')
		call_signaling.clear_call(self.ride.id)
		self.assertFalse(CallSession.objects.filter(ride=self.ride).exists())


class ConfirmationMessageTests(TestCase):
	def _client(self, content=None, error=None):
		client = MagicMock()
		if error:
			client.chat.completions.create.side_effect = error
		else:
			client.chat.completions.create.return_value = SimpleNamespace(
				choices=[SimpleNamespace(message=SimpleNamespace(content=content))]
			)
		return client

	def test_default_message_without_api_key(self):
		message = generate_confirmation_message(Decimal('25'), lang='pt')
		self.assertEqual(message, 'Sua viagem de Bs. 25.00 está confirmada! Seu motorista está a caminho.')

	def test_unknown_language_uses_spanish(self):
		self.assertTrue(generate_confirmation_message('10', lang='fr').startswith('¡Tu viaje por Bs. 10.00'))

	def test_generated_message_mentions_charity_in_prompt(self):
		client = self._client(content='  ¡Listo! Gracias por apoyar al Rainforest Trust.  ')

		message = generate_confirmation_message('25', charity_name='Rainforest Trust', client=client)

		self.assertEqual(message, '¡Listo! Gracias por apoyar al Rainforest Trust.')
		prompt = client.chat.completions.create.call_args[1]['messages'][0]['content']
		self.assertIn('Rainforest Trust', prompt)
		self.assertIn('Spanish', prompt)

	def test_failure_falls_back_to_default(self):
		client = self._client(error=RuntimeError('rate limited'))

		with self.assertLogs('services.messaging.confirmation', level='WARNING'):
			message = generate_confirmation_message('25', lang='en', client=client)

		self.assertEqual(message, 'Your ride for Bs. 25.00 is confirmed! Your driver is on the way.')

	def test_empty_completion_falls_back_to_default(self):
		client = self._client(content='')
		self.assertTrue(generate_confirmation_message('25', lang='en', client=client).startswith('Your ride'))


class AcceptRideServiceTests(TestCase):
	def test_failed_accept_releases_driver_claim(self):
		driver = DriverProfile.objects.create(name='Sofia L.', license_plate='4567-GHI', status='available')
		ride = make_ride(status='cancelled', cancelled_by='rider')

		with self.assertRaises(RideNotAvailableError):
			accept_ride(ride.id, driver.id)

		driver.refresh_from_db()
		self.assertEqual(driver.status, 'available')
