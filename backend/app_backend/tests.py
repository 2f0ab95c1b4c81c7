from django.test import TestCase


class HealthCheckTests(TestCase):
	def test_reports_each_dependency(self):
		response = self.client.get('/health/')

		self.assertEqual(response.status_code, 200)
		body = response.json()
		self.assertEqual(body['status'], 'healthy')
		self.assertEqual(body['services']['database'], 'healthy')
		self.assertEqual(body['services']['redis'], 'not configured')
		self.assertEqual(body['services']['channels'], 'healthy')
