from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.test import TestCase
from rest_framework.test import APIClient

from rides.models import RideRequest
from services.ride_management.exceptions import DriverNotAvailableError
from . import services
from .models import DriverProfile


def make_ride(**fields):
	values = {
		'pickup_latitude': Decimal('-16.500000'),
		'pickup_longitude': Decimal('-68.150000'),
		'dropoff_latitude': Decimal('-16.510000'),
		'dropoff_longitude': Decimal('-68.130000'),
		'final_fare': Decimal('18.00'),
	}
	values.update(fields)
	return RideRequest.objects.create(**values)


class DriverServiceTests(TestCase):
	def setUp(self):
		self.profile = DriverProfile.objects.create(
			name='Juan P.',
			license_plate='5482-ABC',
			vehicle_model='Toyota Corolla',
			vehicle_color='Silver',
		)

	def test_vehicle_description(self):
		self.assertEqual(self.profile.vehicle_description, 'Toyota Corolla Silver')

	def test_busy_driver_with_active_ride_cannot_go_offline(self):
		self.profile.status = 'busy'
		self.profile.save()
		make_ride(status='accepted', driver=self.profile)

		with self.assertRaises(DriverNotAvailableError):
			services.update_driver_status(self.profile, 'offline')

	def test_status_change_without_ride(self):
		services.update_driver_status(self.profile, 'offline')
		self.profile.refresh_from_db()
		self.assertEqual(self.profile.status, 'offline')

	def test_seed_demo_fleet_is_repeatable(self):
		self.assertEqual(services.seed_demo_fleet(), len(services.DEMO_FLEET) - 1)
		self.assertEqual(services.seed_demo_fleet(), 0)
		self.assertEqual(DriverProfile.objects.count(), len(services.DEMO_FLEET))

	def test_seed_command(self):
		out = StringIO()
		call_command('seed_drivers', stdout=out)
		self.assertEqual(DriverProfile.objects.count(), len(services.DEMO_FLEET))


class DriverApiTests(TestCase):
	def setUp(self):
		self.client = APIClient()
		self.profile = DriverProfile.objects.create(name='Maria G.', license_plate='1234-XYZ')

	def test_register_driver(self):
		response = self.client.post('/api/driver/', {
			'name': 'Carlos R.',
			'license_plate': '9876-DEF',
			'vehicle_model': 'Suzuki Swift',
			'vehicle_color': 'Red',
		}, format='json')

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['status'], 'available')

	def test_duplicate_plate_is_rejected(self):
		response = self.client.post('/api/driver/', {'name': 'Copy', 'license_plate': '1234-XYZ'}, format='json')
		self.assertEqual(response.status_code, 400)

	def test_unknown_driver_is_not_found(self):
		response = self.client.get('/api/driver/999999/')
		self.assertEqual(response.status_code, 404)
		self.assertEqual(response.data['error'], 'driver_not_found')

	def test_status_update_and_conflict(self):
		url = f'/api/driver/{self.profile.id}/status/'
		self.assertEqual(self.client.put(url, {'status': 'offline'}, format='json').status_code, 200)

		self.profile.status = 'busy'
		self.profile.save()
		make_ride(status='in_progress', driver=self.profile)

		response = self.client.put(url, {'status': 'available'}, format='json')
		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'driver_busy')

	def test_busy_is_not_a_settable_status(self):
		response = self.client.put(f'/api/driver/{self.profile.id}/status/', {'status': 'busy'}, format='json')
		self.assertEqual(response.status_code, 400)

	def test_current_ride_and_history(self):
		url = f'/api/driver/{self.profile.id}/current-ride/'
		self.assertFalse(self.client.get(url).data['has_active_ride'])

		ride = make_ride(status='accepted', driver=self.profile)
		response = self.client.get(url)
		self.assertTrue(response.data['has_active_ride'])
		self.assertEqual(response.data['ride']['id'], ride.id)

		RideRequest.objects.filter(id=ride.id).update(status='completed')
		history = self.client.get(f'/api/driver/{self.profile.id}/history/')
		self.assertEqual(history.data['count'], 1)
