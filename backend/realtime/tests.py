from decimal import Decimal
from unittest.mock import AsyncMock, patch

from asgiref.sync import sync_to_async
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.test import TestCase, TransactionTestCase

from drivers.models import DriverProfile
from rides.models import RideRequest
from services.ride_management import abandon_ride, accept_ride, cancel_ride, complete_ride
from . import broadcast
from .routing import websocket_urlpatterns

application = URLRouter(websocket_urlpatterns)


def make_ride(**fields):
	values = {
		'pickup_latitude': Decimal('-16.500000'),
		'pickup_longitude': Decimal('-68.150000'),
		'dropoff_latitude': Decimal('-16.510000'),
		'dropoff_longitude': Decimal('-68.130000'),
		'final_fare': Decimal('20.00'),
		'status': 'pending',
	}
	values.update(fields)
	return RideRequest.objects.create(**values)


class BroadcastTests(TestCase):
	def test_events_carry_unique_ids(self):
		first = broadcast.build_event('ride_accepted', ride_id=1)
		second = broadcast.build_event('ride_accepted', ride_id=1)

		self.assertEqual(first['type'], 'ride_accepted')
		self.assertNotEqual(first['event_id'], second['event_id'])
		self.assertIn('sent_at', first)

	def test_pending_snapshot_matches_polling_read(self):
		ride = make_ride()
		make_ride(status='cancelled', cancelled_by='rider')

		event = broadcast.build_ride_list_event()

		self.assertEqual(event['count'], 1)
		self.assertEqual(event['rides'][0]['id'], ride.id)

	@patch('realtime.broadcast.get_channel_layer')
	def test_publish_failure_is_logged_not_raised(self, mock_layer):
		mock_layer.return_value.group_send = AsyncMock(side_effect=RuntimeError("redis down"))

		with self.assertLogs('realtime.broadcast', level='ERROR'):
			result = broadcast.publish_to_ride(7, 'chat_message', message={'id': 1})

		self.assertFalse(result['broadcasted'])

	@patch('realtime.broadcast.get_channel_layer', return_value=None)
	def test_publish_without_layer(self, mock_layer):
		self.assertEqual(broadcast.publish_pending_rides()['reason'], 'no_channel_layer')


class DriverFeedConsumerTests(TransactionTestCase):
	async def test_connect_sends_snapshot_then_live_updates(self):
		ride = await sync_to_async(make_ride)()

		communicator = WebsocketCommunicator(application, '/ws/driver/')
		connected, _ = await communicator.connect()
		self.assertTrue(connected)

		hello = await communicator.receive_json_from()
		self.assertEqual(hello['type'], 'connection_established')
		snapshot = await communicator.receive_json_from()
		self.assertEqual(snapshot['type'], 'ride_list_update')
		self.assertEqual([r['id'] for r in snapshot['rides']], [ride.id])

		await sync_to_async(cancel_ride)(ride.id, actor='rider')
		update = await communicator.receive_json_from()
		self.assertEqual(update['type'], 'ride_list_update')
		self.assertEqual(update['rides'], [])

		await communicator.disconnect()

	async def test_refresh_and_unknown_messages(self):
		communicator = WebsocketCommunicator(application, '/ws/driver/')
		await communicator.connect()
		await communicator.receive_json_from()
		await communicator.receive_json_from()

		await communicator.send_json_to({'type': 'refresh_rides'})
		self.assertEqual((await communicator.receive_json_from())['type'], 'ride_list_update')

		await communicator.send_json_to({'type': 'dance'})
		error = await communicator.receive_json_from()
		self.assertEqual(error['type'], 'error')

		await communicator.disconnect()


class RideRoomConsumerTests(TransactionTestCase):
	def setUp(self):
		self.driver = DriverProfile.objects.create(name='Juan P.', license_plate='5482-ABC')
		self.other_driver = DriverProfile.objects.create(name='Maria G.', license_plate='1234-XYZ')
		self.ride = make_ride()

	async def _join(self, role, query=''):
		communicator = WebsocketCommunicator(application, f'/ws/ride/{self.ride.id}/{role}/{query}')
		connected, code = await communicator.connect()
		return communicator, connected, code

	async def test_rider_gets_snapshot_and_acceptance_push(self):
		rider, connected, _ = await self._join('rider')
		self.assertTrue(connected)
		self.assertEqual((await rider.receive_json_from())['type'], 'connection_established')
		snapshot = await rider.receive_json_from()
		self.assertEqual(snapshot['type'], 'ride_snapshot')
		self.assertEqual(snapshot['status'], 'pending')
		self.assertEqual(snapshot['call']['status'], 'none')

		await sync_to_async(accept_ride)(self.ride.id, self.driver.id)

		event = await rider.receive_json_from()
		self.assertEqual(event['type'], 'ride_accepted')
		self.assertEqual(event['ride_id'], self.ride.id)
		self.assertEqual(event['ride']['driver']['license_plate'], '5482-ABC')
		self.assertTrue(event['event_id'])

		await rider.disconnect()

	async def test_driver_cannot_join_unassigned_ride(self):
		_, connected, code = await self._join('driver')
		self.assertFalse(connected)
		self.assertEqual(code, 4404)

	async def test_only_assigned_driver_may_join(self):
		await sync_to_async(accept_ride)(self.ride.id, self.driver.id)

		_, connected, _ = await self._join('driver', f'?driver_id={self.other_driver.id}')
		self.assertFalse(connected)

		driver, connected, _ = await self._join('driver', f'?driver_id={self.driver.id}')
		self.assertTrue(connected)
		await driver.disconnect()

	async def test_unknown_ride_is_rejected(self):
		communicator = WebsocketCommunicator(application, '/ws/ride/999999/rider/')
		connected, _ = await communicator.connect()
		self.assertFalse(connected)

	async def test_chat_over_socket_reaches_both_parties(self):
		await sync_to_async(accept_ride)(self.ride.id, self.driver.id)
		rider, _, _ = await self._join('rider')
		driver, _, _ = await self._join('driver', f'?driver_id={self.driver.id}')
		for communicator in (rider, driver):
			await communicator.receive_json_from()
			await communicator.receive_json_from()

		await driver.send_json_to({'type': 'chat_message', 'text': 'Llego en 5 minutos'})

		for communicator in (rider, driver):
			event = await communicator.receive_json_from()
			self.assertEqual(event['type'], 'chat_message')
			self.assertEqual(event['message']['sender'], 'driver')
			self.assertEqual(event['message']['text'], 'Llego en 5 minutos')

		await rider.disconnect()
		await driver.disconnect()

	async def test_chat_keeps_each_senders_order_for_every_subscriber(self):
		await sync_to_async(accept_ride)(self.ride.id, self.driver.id)
		rider, _, _ = await self._join('rider')
		driver, _, _ = await self._join('driver', f'?driver_id={self.driver.id}')
		for communicator in (rider, driver):
			await communicator.receive_json_from()
			await communicator.receive_json_from()

		rider_lines = ['r1', 'r2', 'r3', 'r4']
		driver_lines = ['d1', 'd2', 'd3', 'd4']
		for rider_text, driver_text in zip(rider_lines, driver_lines):
			await rider.send_json_to({'type': 'chat_message', 'text': rider_text})
			await driver.send_json_to({'type': 'chat_message', 'text': driver_text})

		for communicator in (rider, driver):
			received = []
			for _ in range(len(rider_lines) + len(driver_lines)):
				event = await communicator.receive_json_from(timeout=3)
				self.assertEqual(event['type'], 'chat_message')
				received.append(event['message'])

			self.assertEqual([m['text'] for m in received if m['sender'] == 'rider'], rider_lines)
			self.assertEqual([m['text'] for m in received if m['sender'] == 'driver'], driver_lines)
			ids = [m['id'] for m in received if m['sender'] == 'rider']
			self.assertEqual(ids, sorted(ids))

		await rider.disconnect()
		await driver.disconnect()

	async def test_completed_ride_room_is_closed(self):
		await sync_to_async(accept_ride)(self.ride.id, self.driver.id)
		await sync_to_async(complete_ride)(self.ride.id)

		_, connected, code = await self._join('rider')

		self.assertFalse(connected)
		self.assertEqual(code, 4404)

	async def test_abandoned_ride_pushes_cancellation_to_room(self):
		await sync_to_async(accept_ride)(self.ride.id, self.driver.id)
		driver, _, _ = await self._join('driver', f'?driver_id={self.driver.id}')
		await driver.receive_json_from()
		await driver.receive_json_from()

		await sync_to_async(abandon_ride)(self.ride.id, actor='rider')

		event = await driver.receive_json_from()
		self.assertEqual(event['type'], 'ride_cancelled')
		self.assertEqual(event['driver_id'], self.driver.id)
		self.assertIsNone(event['ride']['driver'])
		await driver.disconnect()

	async def test_late_joiner_gets_no_replay(self):
		await sync_to_async(accept_ride)(self.ride.id, self.driver.id)
		rider, _, _ = await self._join('rider')
		await rider.receive_json_from()
		await rider.receive_json_from()
		await rider.send_json_to({'type': 'chat_message', 'text': 'Primero'})
		await rider.receive_json_from()

		driver, _, _ = await self._join('driver', f'?driver_id={self.driver.id}')
		self.assertEqual((await driver.receive_json_from())['type'], 'connection_established')
		self.assertEqual((await driver.receive_json_from())['type'], 'ride_snapshot')
		self.assertTrue(await driver.receive_nothing())

		await rider.disconnect()
		await driver.disconnect()

	async def test_chat_before_acceptance_returns_error(self):
		rider, _, _ = await self._join('rider')
		await rider.receive_json_from()
		await rider.receive_json_from()

		await rider.send_json_to({'type': 'chat_message', 'text': 'Hola?'})

		error = await rider.receive_json_from()
		self.assertEqual(error['type'], 'error')
		self.assertIn('Chat', error['message'])
		await rider.disconnect()

	@patch('rides.tasks.auto_answer_call_task.apply_async')
	async def test_call_signaling_over_socket(self, mock_apply):
		await sync_to_async(accept_ride)(self.ride.id, self.driver.id)
		rider, _, _ = await self._join('rider')
		await rider.receive_json_from()
		await rider.receive_json_from()

		await rider.send_json_to({'type': 'call_initiate', 'call_type': 'voice'})
		ringing = await rider.receive_json_from()
		self.assertEqual(ringing['type'], 'call_updated')
		self.assertEqual(ringing['call']['status'], 'ringing')

		await rider.send_json_to({'type': 'call_answer'})
		error = await rider.receive_json_from()
		self.assertEqual(error['type'], 'error')

		await rider.send_json_to({'type': 'call_end'})
		ended = await rider.receive_json_from()
		self.assertEqual(ended['call']['status'], 'ended')
		await rider.disconnect()
