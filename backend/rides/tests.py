import threading
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.db import connections
from django.test import TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework.test import APIRequestFactory

from common.utils import calculate_distance_km
from drivers.models import DriverProfile
from services.pricing import FareEstimationError
from services.ride_management.exceptions import (
	CorruptRideError,
	RideNotAvailableError,
	RideNotFoundError,
	RideValidationError,
)
from services.routing import GeocodingError
from services import ride_management
from . import store
from .models import CallSession, ChatMessage, RideRequest
from .views import (
	abandon_ride,
	accept_ride,
	cancel_ride,
	complete_ride,
	driver_arrived,
	estimate_fare,
	reverse_geocode,
	ride_call_action,
	ride_chat,
	ride_confirmation,
	ride_detail,
	rides_collection,
	search_places,
	trip_complete,
)

PICKUP = {'lat': -16.5000, 'lng': -68.1500, 'address': 'Plaza Murillo'}
DROPOFF = {'lat': -16.5100, 'lng': -68.1300, 'address': 'Sopocachi'}


def booking(**overrides):
	payload = {
		'pickup': PICKUP,
		'dropoff': DROPOFF,
		'final_fare': '25.00',
		'ride_option': 'viaje',
		'charity': 'animal_rescue',
	}
	payload.update(overrides)
	return payload


def make_ride(**fields):
	values = {
		'pickup_latitude': Decimal('-16.500000'),
		'pickup_longitude': Decimal('-68.150000'),
		'dropoff_latitude': Decimal('-16.510000'),
		'dropoff_longitude': Decimal('-68.130000'),
		'final_fare': Decimal('25.00'),
		'status': 'pending',
	}
	values.update(fields)
	return RideRequest.objects.create(**values)


def make_driver(plate, name='Juan P.', status='available'):
	return DriverProfile.objects.create(
		name=name,
		license_plate=plate,
		vehicle_model='Toyota Corolla',
		vehicle_color='Silver',
		status=status,
	)


class RideIntegrityTests(TestCase):
	def test_valid_pending_ride_has_no_errors(self):
		self.assertEqual(make_ride().integrity_errors(), [])

	def test_assigned_status_without_driver_is_flagged(self):
		ride = make_ride(status='accepted')
		self.assertIn('status accepted requires a driver', ride.integrity_errors())

	def test_pending_ride_with_driver_is_flagged(self):
		ride = make_ride(driver=make_driver('1111-AAA'))
		self.assertIn('status pending must not have a driver', ride.integrity_errors())

	def test_out_of_range_coordinates_are_flagged(self):
		ride = make_ride(pickup_latitude=Decimal('95.000000'))
		self.assertIn('invalid pickup coordinates', ride.integrity_errors())

	def test_chat_is_open_only_while_assigned_and_active(self):
		driver = make_driver('1111-AAA')
		self.assertFalse(make_ride().is_chat_open)
		self.assertTrue(make_ride(status='accepted', driver=driver).is_chat_open)
		self.assertTrue(make_ride(status='in_progress', driver=driver).is_chat_open)
		self.assertFalse(make_ride(status='completed', driver=driver).is_chat_open)


class RideStoreTests(TestCase):
	def test_get_ride_unknown_id_raises_not_found(self):
		with self.assertRaises(RideNotFoundError):
			store.get_ride(999999)

	def test_get_ride_rejects_corrupt_row_and_logs(self):
		ride = make_ride(status='accepted')
		with self.assertLogs('rides.store', level='ERROR') as logs:
			with self.assertRaises(CorruptRideError):
				store.get_ride(ride.id)
		self.assertIn(str(ride.id), logs.output[0])

	def test_list_pending_is_oldest_first_and_skips_corrupt_rows(self):
		first = make_ride()
		second = make_ride()
		make_ride(status='accepted', driver=make_driver('2222-BBB'))
		make_ride(final_fare=Decimal('0'))

		with self.assertLogs('rides.store', level='ERROR'):
			pending = store.list_pending()

		self.assertEqual([ride.id for ride in pending], [first.id, second.id])

	def test_compare_and_set_status_applies_once(self):
		ride = make_ride()
		now = timezone.now()
		self.assertTrue(store.compare_and_set_status(ride.id, 'pending', 'cancelled', cancelled_at=now))
		self.assertFalse(store.compare_and_set_status(ride.id, 'pending', 'cancelled', cancelled_at=now))

		ride.refresh_from_db()
		self.assertEqual(ride.status, 'cancelled')

	def test_update_fields_if_status_leaves_status_alone(self):
		driver = make_driver('3333-CCC', status='busy')
		ride = make_ride(status='in_progress', driver=driver)

		self.assertTrue(store.update_fields_if_status(ride.id, 'in_progress', trip_completed_at=timezone.now()))
		self.assertFalse(store.update_fields_if_status(ride.id, 'accepted', trip_completed_at=None))

		ride.refresh_from_db()
		self.assertEqual(ride.status, 'in_progress')
		self.assertIsNotNone(ride.trip_completed_at)


class RideBookingApiTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()

	@patch('realtime.broadcast.publish_pending_rides')
	def test_create_ride_prices_route_and_notifies_dashboards(self, mock_publish):
		request = self.factory.post('/api/rides/', booking(ride_option='confort'), format='json')
		with self.captureOnCommitCallbacks(execute=True):
			response = rides_collection(request)

		self.assertEqual(response.status_code, 201)
		ride = response.data['ride']
		self.assertEqual(ride['status'], 'pending')
		self.assertEqual(ride['final_fare'], '25.00')
		self.assertIsNone(ride['driver'])
		self.assertFalse(response.data['replayed'])
		self.assertEqual(response.data['estimate_source'], 'fallback')

		distance = calculate_distance_km(PICKUP['lat'], PICKUP['lng'], DROPOFF['lat'], DROPOFF['lng'])
		self.assertAlmostEqual(ride['distance_km'], distance, places=6)
		self.assertEqual(Decimal(ride['suggested_fare']), Decimal(f"{round(distance * 3.80 * 1.5, 2):.2f}"))
		mock_publish.assert_called_once_with()

	def test_create_ride_reports_every_missing_field(self):
		request = self.factory.post('/api/rides/', {'ride_option': 'viaje'}, format='json')
		response = rides_collection(request)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['error'], 'validation_error')
		self.assertCountEqual(response.data['missing'], ['pickup', 'dropoff', 'final_fare'])
		self.assertEqual(RideRequest.objects.count(), 0)

	def test_create_ride_rejects_non_positive_fare(self):
		request = self.factory.post('/api/rides/', booking(final_fare='0'), format='json')
		response = rides_collection(request)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['missing'], ['final_fare'])

	def test_repeated_idempotency_key_returns_the_same_ride(self):
		first = rides_collection(self.factory.post(
			'/api/rides/', booking(), format='json', HTTP_IDEMPOTENCY_KEY='retry-1'
		))
		second = rides_collection(self.factory.post(
			'/api/rides/', booking(), format='json', HTTP_IDEMPOTENCY_KEY='retry-1'
		))

		self.assertEqual(first.status_code, 201)
		self.assertEqual(second.status_code, 200)
		self.assertTrue(second.data['replayed'])
		self.assertEqual(first.data['ride']['id'], second.data['ride']['id'])
		self.assertEqual(RideRequest.objects.count(), 1)

	@patch('services.pricing.fare.FareEstimator.estimate', side_effect=FareEstimationError('No route found'))
	def test_unpriceable_route_is_retryable_and_stores_nothing(self, mock_estimate):
		response = rides_collection(self.factory.post('/api/rides/', booking(), format='json'))

		self.assertEqual(response.status_code, 503)
		self.assertTrue(response.data['retryable'])
		self.assertEqual(RideRequest.objects.count(), 0)

	def test_pending_list_matches_store(self):
		make_ride()
		make_ride(status='cancelled', cancelled_by='rider')

		response = rides_collection(self.factory.get('/api/rides/'))

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['count'], 1)
		self.assertEqual(response.data['rides'][0]['status'], 'pending')

	def test_estimate_fare_uses_straight_line_without_routing_key(self):
		request = self.factory.post('/api/rides/estimate/', {
			'pickup': PICKUP, 'dropoff': DROPOFF, 'ride_option': 'moto',
		}, format='json')
		response = estimate_fare(request)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['source'], 'fallback')
		self.assertEqual(response.data['multiplier'], 0.8)
		self.assertGreater(response.data['travel_time_minutes'], 0)

	def test_estimate_fare_same_point_is_free(self):
		request = self.factory.post('/api/rides/estimate/', {
			'pickup': PICKUP, 'dropoff': PICKUP,
		}, format='json')
		response = estimate_fare(request)

		self.assertEqual(response.data['suggested_fare'], 0.0)
		self.assertEqual(response.data['travel_time_minutes'], 0)


class RideLifecycleApiTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.driver_one = make_driver('5482-ABC', name='Juan P.')
		self.driver_two = make_driver('1234-XYZ', name='Maria G.')
		self.ride = make_ride(charity='rainforest_trust')

	def _accept(self, driver):
		request = self.factory.post(f'/api/rides/{self.ride.id}/accept/', {'driver_id': driver.id}, format='json')
		return accept_ride(request, ride_id=self.ride.id)

	@patch('realtime.broadcast.publish_pending_rides')
	@patch('realtime.broadcast.publish_ride_event')
	def test_accept_assigns_driver_and_notifies_rider(self, mock_event, mock_list):
		with self.captureOnCommitCallbacks(execute=True):
			response = self._accept(self.driver_one)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['driver']['license_plate'], '5482-ABC')

		self.ride.refresh_from_db()
		self.driver_one.refresh_from_db()
		self.assertEqual(self.ride.status, 'accepted')
		self.assertEqual(self.ride.driver, self.driver_one)
		self.assertIsNotNone(self.ride.accepted_at)
		self.assertEqual(self.driver_one.status, 'busy')

		self.assertEqual(mock_event.call_args[0][1], 'ride_accepted')
		mock_list.assert_called_once_with()

	def test_second_driver_gets_conflict(self):
		self._accept(self.driver_one)
		response = self._accept(self.driver_two)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['message'], 'This ride is no longer available.')

		self.driver_two.refresh_from_db()
		self.ride.refresh_from_db()
		self.assertEqual(self.driver_two.status, 'available')
		self.assertEqual(self.ride.driver, self.driver_one)

	def test_accept_unknown_ride_is_not_found_and_driver_stays_free(self):
		request = self.factory.post('/api/rides/999999/accept/', {'driver_id': self.driver_one.id}, format='json')
		response = accept_ride(request, ride_id=999999)

		self.assertEqual(response.status_code, 404)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, 'available')

	def test_accept_without_driver_id_is_validation_error(self):
		request = self.factory.post(f'/api/rides/{self.ride.id}/accept/', {}, format='json')
		response = accept_ride(request, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['missing'], ['driver_id'])

	def test_busy_driver_cannot_accept(self):
		self.driver_one.status = 'offline'
		self.driver_one.save()

		response = self._accept(self.driver_one)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'driver_not_available')
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, 'pending')

	@patch('realtime.broadcast.publish_pending_rides')
	@patch('realtime.broadcast.publish_ride_event')
	def test_rider_cancels_pending_ride(self, mock_event, mock_list):
		request = self.factory.post(f'/api/rides/{self.ride.id}/cancel/', {'actor': 'rider', 'reason': 'Changed plans'}, format='json')
		with self.captureOnCommitCallbacks(execute=True):
			response = cancel_ride(request, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['status'], 'cancelled')
		self.assertEqual(response.data['ride']['cancelled_by'], 'rider')
		self.assertEqual(mock_event.call_args[0][1], 'ride_cancelled')
		mock_list.assert_called_once_with()

	def test_cancel_after_acceptance_is_rejected(self):
		self._accept(self.driver_one)

		response = ride_detail(self.factory.delete(f'/api/rides/{self.ride.id}/'), ride_id=self.ride.id)

		self.assertEqual(response.status_code, 409)
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, 'accepted')

	@patch('realtime.broadcast.publish_ride_event')
	def test_abandon_after_acceptance_releases_driver(self, mock_event):
		self._accept(self.driver_one)
		ChatMessage.objects.create(ride=self.ride, sender='rider', text='Hola')
		request = self.factory.post(f'/api/rides/{self.ride.id}/abandon/', {'actor': 'rider'}, format='json')

		with self.captureOnCommitCallbacks(execute=True):
			response = abandon_ride(request, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['status'], 'cancelled')
		self.assertIsNone(response.data['ride']['driver'])
		self.assertEqual(response.data['released_driver_id'], self.driver_one.id)

		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, 'available')
		self.assertFalse(ChatMessage.objects.filter(ride=self.ride).exists())
		self.assertEqual(mock_event.call_args[0][1], 'ride_cancelled')
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.integrity_errors(), [])

		# The released driver can take the next ride
		next_ride = make_ride()
		request = self.factory.post('/', {'driver_id': self.driver_one.id}, format='json')
		self.assertEqual(accept_ride(request, ride_id=next_ride.id).status_code, 200)

	def test_driver_abandons_in_progress_ride(self):
		self._accept(self.driver_one)
		payload = {'driver_id': self.driver_one.id}
		driver_arrived(self.factory.post('/', payload, format='json'), ride_id=self.ride.id)

		request = self.factory.post('/', {'actor': 'driver', 'driver_id': self.driver_one.id}, format='json')
		response = abandon_ride(request, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['cancelled_by'], 'driver')
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, 'available')

	def test_abandon_by_unassigned_driver_is_rejected(self):
		self._accept(self.driver_one)
		request = self.factory.post('/', {'actor': 'driver', 'driver_id': self.driver_two.id}, format='json')

		response = abandon_ride(request, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 409)
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, 'accepted')

	def test_abandon_pending_or_finished_ride_is_conflict(self):
		def abandon():
			request = self.factory.post('/', {'actor': 'rider'}, format='json')
			return abandon_ride(request, ride_id=self.ride.id)

		self.assertEqual(abandon().status_code, 409)
		self._accept(self.driver_one)
		self.assertEqual(abandon().status_code, 200)
		self.assertEqual(abandon().status_code, 409)

	def test_non_numeric_driver_id_is_validation_error(self):
		self._accept(self.driver_one)
		request = self.factory.post('/', {'driver_id': 'abc'}, format='json')

		arrived = driver_arrived(request, ride_id=self.ride.id)
		finished = trip_complete(self.factory.post('/', {'driver_id': 'abc'}, format='json'), ride_id=self.ride.id)

		self.assertEqual(arrived.status_code, 400)
		self.assertEqual(arrived.data['missing'], ['driver_id'])
		self.assertEqual(finished.status_code, 400)

	def test_service_rejects_malformed_driver_id(self):
		self._accept(self.driver_one)

		with self.assertRaises(RideValidationError) as ctx:
			ride_management.mark_driver_arrived(self.ride.id, driver_id='abc')

		self.assertEqual(ctx.exception.missing, ['driver_id'])
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, 'accepted')

	def test_full_trip_frees_driver_and_drops_chat(self):
		self._accept(self.driver_one)
		ChatMessage.objects.create(ride=self.ride, sender='rider', text='Hola')
		CallSession.objects.create(ride=self.ride, status='ended')

		payload = {'driver_id': self.driver_one.id}
		arrived = driver_arrived(self.factory.post('/', payload, format='json'), ride_id=self.ride.id)
		self.assertEqual(arrived.data['ride']['status'], 'in_progress')

		finished = trip_complete(self.factory.post('/', payload, format='json'), ride_id=self.ride.id)
		self.assertEqual(finished.data['ride']['status'], 'in_progress')
		self.assertIsNotNone(finished.data['ride']['trip_completed_at'])

		completed = complete_ride(self.factory.post('/'), ride_id=self.ride.id)
		self.assertEqual(completed.status_code, 200)
		self.assertEqual(completed.data['ride']['status'], 'completed')
		self.assertFalse(completed.data['already_completed'])

		again = complete_ride(self.factory.post('/'), ride_id=self.ride.id)
		self.assertEqual(again.status_code, 200)
		self.assertTrue(again.data['already_completed'])

		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, 'available')
		self.assertFalse(ChatMessage.objects.filter(ride=self.ride).exists())
		self.assertFalse(CallSession.objects.filter(ride=self.ride).exists())

	def test_other_driver_cannot_mark_arrival(self):
		self._accept(self.driver_one)
		request = self.factory.post('/', {'driver_id': self.driver_two.id}, format='json')
		response = driver_arrived(request, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 409)

	def test_trip_complete_before_arrival_is_conflict(self):
		self._accept(self.driver_one)
		response = trip_complete(self.factory.post('/', {}, format='json'), ride_id=self.ride.id)
		self.assertEqual(response.status_code, 409)

	def test_complete_pending_ride_is_conflict(self):
		response = complete_ride(self.factory.post('/'), ride_id=self.ride.id)
		self.assertEqual(response.status_code, 409)

	def test_detail_of_corrupt_ride_is_server_error(self):
		broken = make_ride(status='in_progress')
		with self.assertLogs('rides.store', level='ERROR'):
			response = ride_detail(self.factory.get('/'), ride_id=broken.id)

		self.assertEqual(response.status_code, 500)
		self.assertEqual(response.data['error'], 'corrupt_ride')

	def test_confirmation_falls_back_to_default_phrase(self):
		response = ride_confirmation(self.factory.get('/', {'lang': 'en'}), ride_id=self.ride.id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['message'], 'Your ride for Bs. 25.00 is confirmed! Your driver is on the way.')


class RideChatAndCallApiTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.driver = make_driver('9876-DEF')
		self.ride = make_ride()

	def test_chat_is_closed_before_acceptance(self):
		request = self.factory.post('/', {'sender': 'rider', 'text': 'Hola'}, format='json')
		response = ride_chat(request, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'chat_closed')

	def test_chat_messages_are_returned_in_order_and_after_cursor(self):
		ride_management.accept_ride(self.ride.id, self.driver.id)
		for sender, text in [('rider', 'Hola'), ('driver', 'Voy en camino'), ('rider', 'Gracias')]:
			response = ride_chat(self.factory.post('/', {'sender': sender, 'text': text}, format='json'), ride_id=self.ride.id)
			self.assertEqual(response.status_code, 201)

		listing = ride_chat(self.factory.get('/'), ride_id=self.ride.id)
		self.assertEqual([m['text'] for m in listing.data['messages']], ['Hola', 'Voy en camino', 'Gracias'])

		first_id = listing.data['messages'][0]['id']
		newer = ride_chat(self.factory.get('/', {'after': first_id}), ride_id=self.ride.id)
		self.assertEqual(newer.data['count'], 2)

	def test_bad_chat_cursor_is_validation_error(self):
		response = ride_chat(self.factory.get('/', {'after': 'abc'}), ride_id=self.ride.id)
		self.assertEqual(response.status_code, 400)

	def test_call_flow_through_api(self):
		ride_management.accept_ride(self.ride.id, self.driver.id)

		started = ride_call_action(
			self.factory.post('/', {'role': 'rider', 'call_type': 'video'}, format='json'),
			ride_id=self.ride.id, action='initiate',
		)
		self.assertEqual(started.data['call']['status'], 'ringing')
		self.assertEqual(started.data['call']['call_type'], 'video')

		busy = ride_call_action(
			self.factory.post('/', {'role': 'driver'}, format='json'),
			ride_id=self.ride.id, action='initiate',
		)
		self.assertEqual(busy.status_code, 409)

		answered = ride_call_action(
			self.factory.post('/', {'role': 'driver'}, format='json'),
			ride_id=self.ride.id, action='answer',
		)
		self.assertEqual(answered.data['call']['status'], 'active')

		ended = ride_call_action(
			self.factory.post('/', {'role': 'driver'}, format='json'),
			ride_id=self.ride.id, action='end',
		)
		self.assertEqual(ended.data['call']['status'], 'ended')

	def test_unknown_call_action_is_not_found(self):
		response = ride_call_action(
			self.factory.post('/', {'role': 'rider'}, format='json'),
			ride_id=self.ride.id, action='hold',
		)
		self.assertEqual(response.status_code, 404)


class GeocodingApiTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()

	@patch('services.routing.geocoding.NominatimGeocoder.reverse')
	def test_reverse_geocode_proxies_lookup(self, mock_reverse):
		mock_reverse.return_value = {'lat': -16.5, 'lng': -68.15, 'address': 'Plaza Murillo, La Paz'}

		response = reverse_geocode(self.factory.get('/', {'lat': '-16.5', 'lng': '-68.15', 'lang': 'en'}))

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['address'], 'Plaza Murillo, La Paz')
		mock_reverse.assert_called_once_with(-16.5, -68.15, lang='en')

	def test_reverse_geocode_requires_coordinates(self):
		response = reverse_geocode(self.factory.get('/', {'lat': '-16.5'}))
		self.assertEqual(response.status_code, 400)

	@patch('services.routing.geocoding.NominatimGeocoder.search', side_effect=GeocodingError('timeout'))
	def test_search_failure_is_bad_gateway(self, mock_search):
		response = search_places(self.factory.get('/', {'q': 'Sopocachi'}))

		self.assertEqual(response.status_code, 502)
		self.assertTrue(response.data['retryable'])


class AcceptRaceTests(TransactionTestCase):
	"""Concurrent callers on one ride, each on its own connection."""

	def setUp(self):
		self.drivers = [make_driver(f'RACE-{i}', name=f'Driver {i}') for i in range(5)]
		self.ride = make_ride()
		patcher_event = patch('realtime.broadcast.publish_ride_event')
		patcher_list = patch('realtime.broadcast.publish_pending_rides')
		patcher_event.start()
		patcher_list.start()
		self.addCleanup(patcher_event.stop)
		self.addCleanup(patcher_list.stop)

	def _run_concurrently(self, callables):
		results = [None] * len(callables)
		barrier = threading.Barrier(len(callables))

		def worker(index, func):
			barrier.wait()
			try:
				results[index] = func()
			except Exception as e:
				results[index] = e
			finally:
				connections.close_all()

		threads = [threading.Thread(target=worker, args=(i, f)) for i, f in enumerate(callables)]
		for thread in threads:
			thread.start()
		for thread in threads:
			thread.join()
		return results

	def test_exactly_one_driver_wins(self):
		results = self._run_concurrently([
			(lambda d=driver: ride_management.accept_ride(self.ride.id, d.id)) for driver in self.drivers
		])

		winners = [r for r in results if not isinstance(r, Exception)]
		losers = [r for r in results if isinstance(r, Exception)]
		self.assertEqual(len(winners), 1)
		self.assertTrue(all(isinstance(e, RideNotAvailableError) for e in losers))

		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, 'accepted')
		self.assertEqual(self.ride.driver_id, winners[0].ride.driver_id)
		self.assertEqual(DriverProfile.objects.filter(status='busy').count(), 1)

	def test_accept_and_cancel_race_has_one_outcome(self):
		driver = self.drivers[0]
		results = self._run_concurrently([
			lambda: ride_management.accept_ride(self.ride.id, driver.id),
			lambda: ride_management.cancel_ride(self.ride.id, actor='rider'),
		])

		self.assertEqual(sum(1 for r in results if not isinstance(r, Exception)), 1)
		self.ride.refresh_from_db()
		driver.refresh_from_db()
		if self.ride.status == 'accepted':
			self.assertEqual(driver.status, 'busy')
		else:
			self.assertEqual(self.ride.status, 'cancelled')
			self.assertIsNone(self.ride.driver_id)
			self.assertEqual(driver.status, 'available')

	def test_abandon_and_complete_race_has_one_outcome(self):
		driver = self.drivers[0]
		ride_management.accept_ride(self.ride.id, driver.id)

		results = self._run_concurrently([
			lambda: ride_management.complete_ride(self.ride.id),
			lambda: ride_management.abandon_ride(self.ride.id, actor='rider'),
		])

		self.assertEqual(sum(1 for r in results if not isinstance(r, Exception)), 1)
		self.ride.refresh_from_db()
		driver.refresh_from_db()
		self.assertIn(self.ride.status, ('completed', 'cancelled'))
		self.assertEqual(self.ride.integrity_errors(), [])
		self.assertEqual(driver.status, 'available')


class CleanupCommandTests(TestCase):
	def setUp(self):
		self.driver = make_driver('4567-GHI')
		self.old_ride = make_ride(status='cancelled', cancelled_by='rider')
		RideRequest.objects.filter(id=self.old_ride.id).update(created_at=timezone.now() - timedelta(days=45))
		self.finished = make_ride(status='completed', driver=self.driver)
		ChatMessage.objects.create(ride=self.finished, sender='rider', text='left over')
		self.active = make_ride(status='accepted', driver=self.driver)
		ChatMessage.objects.create(ride=self.active, sender='rider', text='still talking')

	def test_dry_run_deletes_nothing(self):
		out = StringIO()
		call_command('cleanup_old_data', '--dry-run', stdout=out)

		self.assertIn('DRY RUN', out.getvalue())
		self.assertEqual(RideRequest.objects.count(), 3)
		self.assertEqual(ChatMessage.objects.count(), 2)

	def test_removes_stale_chat_and_old_finished_rides(self):
		call_command('cleanup_old_data', '--days', '30', stdout=StringIO())

		self.assertFalse(RideRequest.objects.filter(id=self.old_ride.id).exists())
		self.assertTrue(RideRequest.objects.filter(id=self.finished.id).exists())
		self.assertEqual(list(ChatMessage.objects.values_list('text', flat=True)), ['still talking'])
