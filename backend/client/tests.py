import json
from json import dumps
from unittest.mock import MagicMock
from urllib.parse import urlsplit

from django.test import Client, SimpleTestCase, TestCase

from drivers.models import DriverProfile
from .api import RideApiClient
from .exceptions import ConnectivityError, RideNotFound, RideUnavailable, ServiceUnavailable
from .realtime import Poller, RealtimeListener, driver_feed_url, driver_poller, ride_room_url, rider_poller
from .scheduler import ManualScheduler
from .session import DriverSession, DriverState, RiderSession, RiderState, derive_triggers

NO_LONGER_AVAILABLE = "This ride is no longer available."


def ride(ride_id=1, status='pending', **fields):
	data = {'id': ride_id, 'status': status, 'trip_completed_at': None, 'final_fare': '25.00'}
	data.update(fields)
	return data


def event(event_type, ride_id=1, event_id=None, **fields):
	payload = {'type': event_type, 'ride_id': ride_id, 'event_id': event_id or f'{event_type}-{ride_id}'}
	payload.update(fields)
	return payload


def fake_api():
	api = MagicMock(spec=RideApiClient)
	api.estimate_fare.return_value = {'distance_km': 4.2, 'travel_time_minutes': 11, 'suggested_fare': 15.96}
	api.create_ride.return_value = ride()
	api.get_confirmation.return_value = 'Gracias!'
	api.current_ride.return_value = None
	api.abandon_ride.return_value = ride(status='cancelled')
	return api


class DeriveTriggersTests(SimpleTestCase):
	def test_snapshot_statuses_map_to_event_chains(self):
		self.assertEqual(derive_triggers(ride(status='pending')), [])
		self.assertEqual(derive_triggers(ride(status='accepted')), ['ride_accepted'])
		self.assertEqual(derive_triggers(ride(status='in_progress')), ['ride_accepted', 'driver_arrived'])
		self.assertEqual(
			derive_triggers(ride(status='in_progress', trip_completed_at='2026-01-01T10:00:00Z')),
			['ride_accepted', 'driver_arrived', 'trip_completed'],
		)
		self.assertEqual(derive_triggers(ride(status='cancelled')), ['ride_cancelled'])


class RiderSessionTests(SimpleTestCase):
	def setUp(self):
		self.api = fake_api()
		self.scheduler = ManualScheduler()
		self.session = RiderSession(self.api, scheduler=self.scheduler)

	def _book(self):
		self.session.set_pickup(-16.5, -68.15, 'Plaza Murillo')
		self.session.set_dropoff(-16.51, -68.13, 'Sopocachi')
		self.assertTrue(self.session.book())

	def test_points_selection_triggers_estimate(self):
		self.session.set_point(-16.5, -68.15)
		self.assertEqual(self.session.selection_mode, 'dropoff')
		self.api.estimate_fare.assert_not_called()

		self.session.set_point(-16.51, -68.13)

		self.assertEqual(self.session.state, RiderState.IDLE)
		self.assertEqual(self.session.final_fare, '15.96')
		self.assertEqual(
			[h[:2] for h in self.session.history],
			[(RiderState.IDLE, RiderState.CALCULATING), (RiderState.CALCULATING, RiderState.IDLE)],
		)

	def test_failed_estimate_returns_to_idle_with_error(self):
		self.api.estimate_fare.side_effect = ServiceUnavailable('Routing is down')
		self.session.set_pickup(-16.5, -68.15)
		self.session.set_dropoff(-16.51, -68.13)

		self.assertEqual(self.session.state, RiderState.IDLE)
		self.assertIsNone(self.session.estimate)
		self.assertEqual(self.session.error, 'Routing is down')

	def test_book_requires_points_and_fare(self):
		self.assertFalse(self.session.book())
		self.assertIn('pickup', self.session.error)
		self.assertIn('final_fare', self.session.error)
		self.api.create_ride.assert_not_called()

	def test_retry_after_network_failure_reuses_request_key(self):
		self.session.set_pickup(-16.5, -68.15)
		self.session.set_dropoff(-16.51, -68.13)
		self.api.create_ride.side_effect = [ConnectivityError('timeout'), ride()]

		self.assertFalse(self.session.book())
		self.assertEqual(self.session.state, RiderState.IDLE)
		self.assertTrue(self.session.book())

		keys = [call.args[1] for call in self.api.create_ride.call_args_list]
		self.assertEqual(keys[0], keys[1])
		self.assertEqual(self.session.state, RiderState.AWAITING_DRIVER)

	def test_events_advance_once_and_ignore_others(self):
		self._book()

		self.assertFalse(self.session.handle_event(event('trip_completed')))
		self.assertTrue(self.session.handle_event(event('ride_accepted', ride=ride(status='accepted'))))
		self.assertFalse(self.session.handle_event(event('ride_accepted', ride=ride(status='accepted'))))
		self.assertFalse(self.session.handle_event(event('driver_arrived', ride_id=2)))

		self.assertEqual(self.session.state, RiderState.DRIVER_EN_ROUTE)
		self.assertEqual(self.session.ride['status'], 'accepted')

	def test_refresh_walks_missed_transitions_in_order(self):
		self._book()
		self.api.get_ride.return_value = ride(status='in_progress', trip_completed_at='2026-01-01T10:00:00Z')

		self.assertTrue(self.session.refresh())

		self.assertEqual(self.session.state, RiderState.PAYMENT_PENDING)
		self.assertEqual(
			[h[1] for h in self.session.history[-3:]],
			[RiderState.DRIVER_EN_ROUTE, RiderState.IN_PROGRESS, RiderState.PAYMENT_PENDING],
		)

	def test_cancel_while_waiting(self):
		self._book()
		self.api.cancel_ride.return_value = ride(status='cancelled')

		self.assertTrue(self.session.cancel_request())

		self.assertEqual(self.session.state, RiderState.IDLE)
		self.assertIsNone(self.session.ride)
		self.assertEqual(self.session.selection_mode, 'pickup')

	def test_cancel_losing_to_acceptance_catches_up(self):
		self._book()
		self.api.cancel_ride.side_effect = RideUnavailable(NO_LONGER_AVAILABLE, 'ride_not_available', 409)
		self.api.get_ride.return_value = ride(status='accepted')

		self.assertFalse(self.session.cancel_request())
		self.assertEqual(self.session.state, RiderState.DRIVER_EN_ROUTE)

	def test_vanished_ride_returns_waiting_rider_to_idle(self):
		self._book()
		self.api.get_ride.side_effect = RideNotFound('Ride not found', 'ride_not_found', 404)

		self.session.refresh()

		self.assertEqual(self.session.state, RiderState.IDLE)
		self.assertEqual(self.session.error, 'Ride not found')

	def _to_payment(self):
		self._book()
		self.session.handle_event(event('ride_accepted'))
		self.session.handle_event(event('driver_arrived'))
		self.session.handle_event(event('trip_completed'))
		self.assertEqual(self.session.state, RiderState.PAYMENT_PENDING)
		self.api.complete_ride.return_value = ride(status='completed')

	def test_payment_verification_and_confirmation_timers(self):
		self._to_payment()

		self.assertTrue(self.session.confirm_payment())
		self.assertEqual(self.session.state, RiderState.VERIFYING_PAYMENT)

		self.scheduler.advance(2.0)
		self.assertEqual(self.session.state, RiderState.VERIFYING_PAYMENT)
		self.scheduler.advance(0.5)
		self.assertEqual(self.session.state, RiderState.CONFIRMED)
		self.assertEqual(self.session.confirmation_message, 'Gracias!')

		self.scheduler.advance(3)
		self.assertEqual(self.session.state, RiderState.IDLE)
		self.assertIsNone(self.session.ride)
		self.assertIsNone(self.session.confirmation_message)

	def test_confirmation_failure_uses_default_text(self):
		self._to_payment()
		self.api.get_confirmation.side_effect = ConnectivityError('offline')

		self.session.confirm_payment()
		self.scheduler.advance(2.5)

		self.assertEqual(self.session.state, RiderState.CONFIRMED)
		self.assertEqual(self.session.confirmation_message, 'Your ride is confirmed!')

	def test_failed_payment_stays_pending(self):
		self._to_payment()
		self.api.complete_ride.side_effect = ConnectivityError('offline')

		self.assertFalse(self.session.confirm_payment())
		self.assertEqual(self.session.state, RiderState.PAYMENT_PENDING)
		self.assertEqual(self.scheduler.pending_count, 0)

	def test_reset_discards_pending_timers(self):
		self._to_payment()
		self.session.confirm_payment()

		self.session.reset()
		self.scheduler.advance(10)

		self.assertEqual(self.session.state, RiderState.IDLE)
		self.api.get_confirmation.assert_not_called()
		self.api.cancel_ride.assert_not_called()

	def test_reset_while_waiting_cancels_best_effort(self):
		self._book()
		self.api.cancel_ride.side_effect = RideUnavailable(NO_LONGER_AVAILABLE, 'ride_not_available', 409)

		self.session.reset()

		self.assertEqual(self.session.state, RiderState.IDLE)
		self.api.cancel_ride.assert_called_once()
		self.api.abandon_ride.assert_called_once_with(1, actor='rider', reason='Rider reset the session')

	def test_reset_with_driver_assigned_abandons_ride(self):
		self._book()
		self.session.handle_event(event('ride_accepted', ride=ride(status='accepted')))

		self.session.reset()

		self.assertEqual(self.session.state, RiderState.IDLE)
		self.assertIsNone(self.session.ride)
		self.api.cancel_ride.assert_not_called()
		self.api.abandon_ride.assert_called_once_with(1, actor='rider', reason='Rider reset the session')

	def test_reset_survives_failed_abandon(self):
		self._book()
		self.session.handle_event(event('ride_accepted'))
		self.session.handle_event(event('driver_arrived'))
		self.api.abandon_ride.side_effect = ConnectivityError('offline')

		with self.assertLogs('client.session', level='INFO'):
			self.session.reset()

		self.assertEqual(self.session.state, RiderState.IDLE)

	def test_cancelled_event_after_acceptance_returns_to_idle(self):
		self._book()
		self.session.handle_event(event('ride_accepted'))

		self.assertTrue(self.session.handle_event(event('ride_cancelled', ride=ride(status='cancelled'))))

		self.assertEqual(self.session.state, RiderState.IDLE)
		self.assertEqual(self.session.error, 'Your ride was cancelled.')
		self.assertEqual(self.session.selection_mode, 'pickup')

	def test_chat_and_call_events(self):
		self._book()
		self.session.handle_event(event('ride_accepted'))

		message = {'id': 10, 'ride_id': 1, 'sender': 'driver', 'text': 'Voy'}
		self.assertTrue(self.session.handle_event(event('chat_message', event_id='e1', message=message)))
		self.assertFalse(self.session.handle_event(event('chat_message', event_id='e2', message=message)))
		self.assertEqual(len(self.session.chat), 1)

		self.session.handle_event(event('call_updated', event_id='e3', call={'status': 'ringing', 'caller': 'driver'}))
		self.assertEqual(self.session.call['status'], 'ringing')

	def test_send_chat_appends_own_message(self):
		self._book()
		self.api.send_chat.return_value = {'id': 3, 'ride': 1, 'sender': 'rider', 'text': 'Hola'}

		self.assertTrue(self.session.send_chat('Hola'))
		self.api.send_chat.assert_called_once_with(1, 'rider', 'Hola')
		self.assertEqual(self.session.chat[0]['text'], 'Hola')

	def test_listeners_are_notified(self):
		seen = []
		self.session.subscribe(lambda s: seen.append(s.state))
		self._book()
		self.assertIn(RiderState.AWAITING_DRIVER, seen)


class DriverSessionTests(SimpleTestCase):
	def setUp(self):
		self.api = fake_api()
		self.session = DriverSession(self.api, driver_id=7, scheduler=ManualScheduler())

	def test_pending_list_updates(self):
		self.session.handle_event({'type': 'ride_list_update', 'event_id': 'l1', 'rides': [ride(1), ride(2)]})
		self.assertEqual([r['id'] for r in self.session.pending_rides], [1, 2])

	def test_losing_accept_surfaces_message_and_refreshes(self):
		self.session.pending_rides = [ride(1), ride(2)]
		self.api.accept_ride.side_effect = RideUnavailable('Conflict', 'ride_not_available', 409)
		self.api.list_pending.return_value = [ride(2)]

		self.assertFalse(self.session.accept(1))

		self.assertEqual(self.session.state, DriverState.DASHBOARD)
		self.assertEqual(self.session.error, NO_LONGER_AVAILABLE)
		self.assertEqual([r['id'] for r in self.session.pending_rides], [2])

	def test_full_trip(self):
		self.api.accept_ride.return_value = ride(status='accepted')
		self.api.mark_arrived.return_value = ride(status='in_progress')
		self.api.signal_trip_complete.return_value = ride(status='in_progress', trip_completed_at='t')

		self.assertTrue(self.session.accept(1))
		self.assertEqual(self.session.state, DriverState.DRIVER_EN_ROUTE)
		self.assertTrue(self.session.mark_arrived())
		self.assertTrue(self.session.finish_trip())
		self.assertEqual(self.session.state, DriverState.PAYMENT_REQUEST)
		self.api.signal_trip_complete.assert_called_once_with(1, 7)

		self.session.handle_event(event('ride_completed', ride=ride(status='completed')))
		self.assertEqual(self.session.state, DriverState.DASHBOARD)
		self.assertIsNone(self.session.ride)

	def test_actions_out_of_order_are_ignored(self):
		self.assertFalse(self.session.mark_arrived())
		self.assertFalse(self.session.finish_trip())
		self.api.mark_arrived.assert_not_called()

	def test_polling_returns_to_dashboard_after_payment(self):
		self.api.accept_ride.return_value = ride(status='accepted')
		self.session.accept(1)
		self.api.get_ride.return_value = ride(status='completed', trip_completed_at='t')
		self.api.list_pending.return_value = []

		self.session.refresh()

		self.assertEqual(self.session.state, DriverState.DASHBOARD)
		self.api.list_pending.assert_called_once_with()

	def test_reset_while_serving_abandons_and_frees_driver(self):
		self.api.accept_ride.return_value = ride(status='accepted')
		self.session.accept(1)
		self.api.list_pending.return_value = [ride(2)]

		self.session.reset()

		self.api.abandon_ride.assert_called_once_with(
			1, actor='driver', reason='Driver reset the session', driver_id=7,
		)
		self.assertEqual(self.session.state, DriverState.DASHBOARD)
		self.assertIsNone(self.session.ride)
		self.assertEqual([r['id'] for r in self.session.pending_rides], [2])

	def test_reset_on_dashboard_only_refreshes(self):
		self.api.list_pending.return_value = []

		self.session.reset()

		self.api.abandon_ride.assert_not_called()
		self.api.current_ride.assert_called_once_with(7)

	def test_dashboard_refresh_resumes_assigned_ride(self):
		self.api.current_ride.return_value = ride(3, status='in_progress')

		self.assertTrue(self.session.refresh())

		self.assertEqual(self.session.state, DriverState.IN_PROGRESS)
		self.assertEqual(self.session.ride_id, 3)
		self.api.list_pending.assert_not_called()
		self.assertTrue(self.session.finish_trip())
		self.api.signal_trip_complete.assert_called_once_with(3, 7)

	def test_current_ride_failure_keeps_dashboard(self):
		self.api.current_ride.side_effect = ConnectivityError('offline')

		self.assertFalse(self.session.refresh())

		self.assertEqual(self.session.state, DriverState.DASHBOARD)
		self.assertEqual(self.session.error, 'offline')

	def test_cancelled_ride_returns_driver_to_dashboard(self):
		self.api.accept_ride.return_value = ride(status='accepted')
		self.session.accept(1)
		self.api.mark_arrived.return_value = ride(status='in_progress')
		self.session.mark_arrived()

		self.assertTrue(self.session.handle_event(event('ride_cancelled', ride=ride(status='cancelled'))))

		self.assertEqual(self.session.state, DriverState.DASHBOARD)
		self.assertIsNone(self.session.ride)


class PollerTests(SimpleTestCase):
	def test_intervals_per_role(self):
		session = MagicMock()
		self.assertEqual(rider_poller(session).interval, 2.5)
		self.assertEqual(driver_poller(session).interval, 3.0)

	def test_poll_once_refreshes_and_logs_failures(self):
		session = MagicMock()
		session.refresh.return_value = True
		self.assertTrue(Poller(session, 1).poll_once())

		session.refresh.side_effect = RuntimeError('boom')
		with self.assertLogs('client.realtime', level='ERROR'):
			self.assertFalse(Poller(session, 1).poll_once())


class RealtimeListenerTests(SimpleTestCase):
	def test_urls(self):
		self.assertEqual(driver_feed_url('https://rides.example'), 'wss://rides.example/ws/driver/')
		self.assertEqual(
			ride_room_url('http://localhost:8000/', 5, 'driver', driver_id=3),
			'ws://localhost:8000/ws/ride/5/driver/?driver_id=3',
		)

	def test_messages_feed_the_session(self):
		session = MagicMock()
		listener = RealtimeListener('ws://test/ws/driver/', session)

		listener.on_open(None)
		listener.on_message(None, json.dumps({'type': 'ride_accepted', 'event_id': 'x'}))
		listener.on_message(None, 'not json')
		listener.on_message(None, json.dumps({'type': 'error', 'message': 'nope'}))

		session.refresh.assert_called_once_with()
		session.handle_event.assert_called_once_with({'type': 'ride_accepted', 'event_id': 'x'})
		self.assertTrue(listener.connected.is_set())


class DjangoTestHttp:
	"""requests.Session stand-in that routes calls through Django's test client."""

	def __init__(self):
		self.client = Client()

	def request(self, method, url, timeout=None, json=None, params=None, headers=None):
		path = urlsplit(url).path
		if method == 'GET':
			return self.client.get(path, data=params or {}, headers=headers)
		return self.client.generic(
			method,
			path,
			data=dumps(json or {}),
			content_type='application/json',
			headers=headers,
		)


class ClientEndToEndTests(TestCase):
	"""Sessions driven only by HTTP calls and polling, against the real views."""

	def setUp(self):
		self.api = RideApiClient('http://testserver', session=DjangoTestHttp())
		self.scheduler = ManualScheduler()
		self.driver_profile = DriverProfile.objects.create(name='Juan P.', license_plate='5482-ABC')
		self.rival_profile = DriverProfile.objects.create(name='Maria G.', license_plate='1234-XYZ')

	def test_ride_from_booking_to_confirmation(self):
		rider = RiderSession(self.api, scheduler=self.scheduler, lang='en')
		driver = DriverSession(self.api, self.driver_profile.id, scheduler=self.scheduler)
		rival = DriverSession(self.api, self.rival_profile.id, scheduler=self.scheduler)

		rider.set_pickup(-16.5, -68.15, 'Plaza Murillo')
		rider.set_dropoff(-16.51, -68.13, 'Sopocachi')
		self.assertEqual(rider.estimate['source'], 'fallback')
		rider.set_final_fare('50.00')
		rider.set_charity('animal_rescue')
		self.assertTrue(rider.book())
		ride_id = rider.ride_id

		driver.refresh()
		self.assertEqual([r['id'] for r in driver.pending_rides], [ride_id])
		self.assertTrue(driver.accept(ride_id))
		self.assertFalse(rival.accept(ride_id))
		self.assertEqual(rival.error, NO_LONGER_AVAILABLE)

		rider.refresh()
		self.assertEqual(rider.state, RiderState.DRIVER_EN_ROUTE)
		rider.refresh()
		self.assertEqual(
			[h for h in rider.history if h[1] == RiderState.DRIVER_EN_ROUTE],
			[(RiderState.AWAITING_DRIVER, RiderState.DRIVER_EN_ROUTE, 'ride_accepted')],
		)
		self.assertEqual(rider.ride['driver']['license_plate'], '5482-ABC')

		self.assertTrue(rider.send_chat('Estoy en la puerta'))
		self.assertTrue(driver.start_call())
		self.assertEqual(driver.call['status'], 'ringing')
		self.assertTrue(rider.answer_call())
		self.assertEqual(rider.call['status'], 'active')

		self.assertTrue(driver.mark_arrived())
		self.assertTrue(driver.finish_trip())
		rider.refresh()
		self.assertEqual(rider.state, RiderState.PAYMENT_PENDING)

		self.assertTrue(rider.confirm_payment())
		self.scheduler.advance(2.5)
		self.assertEqual(rider.state, RiderState.CONFIRMED)
		self.assertEqual(rider.confirmation_message, 'Your ride for Bs. 50.00 is confirmed! Your driver is on the way.')

		driver.refresh()
		self.assertEqual(driver.state, DriverState.DASHBOARD)
		self.driver_profile.refresh_from_db()
		self.assertEqual(self.driver_profile.status, 'available')

		self.scheduler.advance(3)
		self.assertEqual(rider.state, RiderState.IDLE)

	def test_rider_cancel_before_acceptance(self):
		rider = RiderSession(self.api, scheduler=self.scheduler)
		rider.set_pickup(-16.5, -68.15)
		rider.set_dropoff(-16.51, -68.13)
		rider.book()

		self.assertTrue(rider.cancel_request())
		self.assertEqual(rider.state, RiderState.IDLE)
		self.assertEqual(self.api.list_pending(), [])

	def _booked_rider(self):
		rider = RiderSession(self.api, scheduler=self.scheduler)
		rider.set_pickup(-16.5, -68.15)
		rider.set_dropoff(-16.51, -68.13)
		self.assertTrue(rider.book())
		return rider

	def test_resets_after_acceptance_release_the_driver(self):
		rider = self._booked_rider()
		driver = DriverSession(self.api, self.driver_profile.id, scheduler=self.scheduler)
		first_ride = rider.ride_id
		self.assertTrue(driver.accept(first_ride))

		rider.reset()
		driver.reset()

		self.assertEqual(self.api.get_ride(first_ride)['status'], 'cancelled')
		self.driver_profile.refresh_from_db()
		self.assertEqual(self.driver_profile.status, 'available')
		self.assertEqual(driver.state, DriverState.DASHBOARD)

		rider = self._booked_rider()
		driver.refresh()
		self.assertEqual([r['id'] for r in driver.pending_rides], [rider.ride_id])
		self.assertTrue(driver.accept(rider.ride_id))
		rider.refresh()
		self.assertEqual(rider.state, RiderState.DRIVER_EN_ROUTE)

	def test_driver_reset_mid_trip_returns_rider_to_idle(self):
		rider = self._booked_rider()
		driver = DriverSession(self.api, self.driver_profile.id, scheduler=self.scheduler)
		self.assertTrue(driver.accept(rider.ride_id))
		self.assertTrue(driver.mark_arrived())

		driver.reset()
		rider.refresh()

		self.assertEqual(rider.state, RiderState.IDLE)
		self.assertEqual(rider.error, 'Your ride was cancelled.')
		self.assertEqual(driver.state, DriverState.DASHBOARD)
		self.driver_profile.refresh_from_db()
		self.assertEqual(self.driver_profile.status, 'available')

	def test_new_driver_session_resumes_assigned_ride(self):
		rider = self._booked_rider()
		DriverSession(self.api, self.driver_profile.id, scheduler=self.scheduler).accept(rider.ride_id)

		reopened = DriverSession(self.api, self.driver_profile.id, scheduler=self.scheduler)
		self.assertTrue(reopened.refresh())

		self.assertEqual(reopened.state, DriverState.DRIVER_EN_ROUTE)
		self.assertEqual(reopened.ride_id, rider.ride_id)
		self.assertTrue(reopened.mark_arrived())
		rider.refresh()
		self.assertEqual(rider.state, RiderState.IN_PROGRESS)
