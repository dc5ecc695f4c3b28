import base64
from datetime import datetime, timezone
from unittest.mock import MagicMock
from requests import Timeout, ConnectionError as RequestsConnectionError
from django.test import TestCase, SimpleTestCase

from delivery_service.testing import FakeERPClient, make_user, make_shipment, make_delivery
from .authenticate import ERPAuthentication
from .models import Shipment, ShipmentStatus, get_or_create_posting_status
from .rest import RESTServices, ERPConnectionError, ERPRejectionError
from .services import ShipmentProvider
from .util import format_datetime_to_iso8601, to_unix_timestamp


def fake_response(status_code, body=None, text=''):
	response = MagicMock(status_code=status_code)
	if body is None:
		response.content = text.encode()
		response.text = text
		response.json.side_effect = ValueError('No JSON')
	else:
		response.content = b'{...}'
		response.text = str(body)
		response.json.return_value = body
	return response


class RESTServicesTest(SimpleTestCase):
	"""
	Test cases for the ERP REST client
	"""

	def setUp(self):
		self.client = RESTServices(
			auth=ERPAuthentication(api_key='test-key', endpoint='https://erp.example.com/api/index.php/'),
			timeout=5,
		)
		self.session = MagicMock()
		self.client._session = self.session

	def test_success_returns_json(self):
		"""Test that a 2xx answer returns the decoded body"""
		self.session.request.return_value = fake_response(200, {'id': 42, 'ref': 'SH00042'})

		self.assertEqual(self.client.get_shipment(42)['ref'], 'SH00042')
		method, url = self.session.request.call_args[0]
		self.assertEqual((method, url), ('GET', 'https://erp.example.com/api/index.php/shipments/42'))
		self.assertEqual(self.session.request.call_args[1]['timeout'], 5)

	def test_empty_success(self):
		"""Test that a 2xx answer without a body returns an empty dict"""
		self.session.request.return_value = fake_response(204)
		self.assertEqual(self.client.insert_tracking(42, {}), {})

	def test_transient_status_codes(self):
		"""Test that 408, 429 and 5xx are connection errors"""
		for status_code in (408, 429, 500, 503):
			self.session.request.return_value = fake_response(status_code, {'error': {'message': 'busy'}})
			with self.assertRaises(ERPConnectionError):
				self.client.update_shipment_status(42, {'status': 'delivered'})

	def test_rejection(self):
		"""Test that a 4xx answer is a rejection carrying the status code"""
		self.session.request.return_value = fake_response(400, {'error': {'message': 'Bad status'}})
		with self.assertRaises(ERPRejectionError) as context:
			self.client.update_shipment_status(42, {'status': 'lost'})
		self.assertEqual(context.exception.status_code, 400)
		self.assertIn('Bad status', str(context.exception))

	def test_unknown_shipment(self):
		"""Test that a 404 on a shipment means it does not exist"""
		self.session.request.return_value = fake_response(404, text='Not found')
		self.assertIsNone(self.client.get_shipment(77))

	def test_network_errors(self):
		"""Test that timeouts and refused connections are connection errors"""
		self.session.request.side_effect = Timeout()
		with self.assertRaises(ERPConnectionError) as context:
			self.client.get_shipment(42)
		self.assertIn('timed out after 5s', str(context.exception))

		self.session.request.side_effect = RequestsConnectionError('refused')
		with self.assertRaises(ERPConnectionError):
			self.client.insert_tracking(42, {})
		self.assertFalse(self.client.ping())

	def test_upload_document(self):
		"""Test the document payload and the idempotency key header"""
		self.session.request.return_value = fake_response(200, 'delivery_signature_7.png')

		self.client.upload_document('SH00042', 'delivery_signature_7.png', b'\x89PNG', idempotency_key='42:delivery_signature:7')

		kwargs = self.session.request.call_args[1]
		self.assertEqual(kwargs['headers']['Idempotency-Key'], '42:delivery_signature:7')
		payload = kwargs['json']
		self.assertEqual(payload['ref'], 'SH00042')
		self.assertEqual(payload['modulepart'], 'expedition')
		self.assertEqual(payload['overwriteifexists'], 1)
		self.assertEqual(base64.b64decode(payload['filecontent']), b'\x89PNG')

	def test_session_carries_api_key(self):
		"""Test the authentication headers of a fresh session"""
		session = ERPAuthentication(api_key='test-key', endpoint='https://erp.example.com').get_session()
		self.assertEqual(session.headers['DOLAPIKEY'], 'test-key')


class ERPUtilTest(SimpleTestCase):

	def test_format_datetime(self):
		"""Test that datetimes are sent in UTC to the second"""
		dt = datetime(2024, 3, 1, 9, 30, 15, 123456, tzinfo=timezone.utc)
		self.assertEqual(format_datetime_to_iso8601(dt), '2024-03-01T09:30:15Z')
		self.assertEqual(to_unix_timestamp(dt), 1709285415)


class ShipmentProviderTest(TestCase):
	"""
	Test cases for ShipmentProvider
	"""

	def setUp(self):
		self.driver = make_user('driver1')

	def test_mirrored_shipment_needs_no_call(self):
		"""Test that a local shipment is returned without asking the ERP"""
		make_shipment(42, driver=self.driver)
		client = FakeERPClient()
		client.get_shipment = MagicMock()

		shipment = ShipmentProvider(client=client).get_shipment('42')

		self.assertEqual(shipment.reference, 'SH00042')
		client.get_shipment.assert_not_called()

	def test_missing_shipment_is_mirrored(self):
		"""Test that an ERP shipment is stored locally with its driver"""
		client = FakeERPClient(shipments={43: {
			'ref': 'SH00043', 'statut': '1', 'socname': 'Beta Ltd',
			'array_options': {'options_driver_login': 'driver1'},
		}})

		shipment = ShipmentProvider(client=client).get_shipment(43)

		self.assertEqual(shipment.pk, 43)
		self.assertEqual(shipment.status, ShipmentStatus.VALIDATED)
		self.assertEqual(shipment.customer_name, 'Beta Ltd')
		self.assertEqual(shipment.assigned_driver, self.driver)
		self.assertTrue(Shipment.objects.filter(pk=43).exists())

	def test_cancelled_in_erp(self):
		"""Test the status mapping of a cancelled shipment"""
		client = FakeERPClient(shipments={44: {'ref': 'SH00044', 'statut': -1}})
		shipment = ShipmentProvider(client=client).get_shipment(44)
		self.assertEqual(shipment.status, ShipmentStatus.CANCELLED)
		self.assertFalse(shipment.is_deliverable)

	def test_unknown_shipment(self):
		"""Test that unknown and malformed ids give None"""
		provider = ShipmentProvider(client=FakeERPClient())
		self.assertIsNone(provider.get_shipment(77))
		self.assertIsNone(provider.get_shipment('abc'))

	def test_erp_down_propagates(self):
		"""Test that connection errors reach the caller"""
		client = MagicMock()
		client.get_shipment.side_effect = ERPConnectionError('ERP unreachable')
		with self.assertRaises(ERPConnectionError):
			ShipmentProvider(client=client).get_shipment(45)


class ERPPostingStatusTest(TestCase):
	"""
	Test cases for ERPPostingStatus
	"""

	def setUp(self):
		driver = make_user('driver1')
		self.delivery = make_delivery(make_shipment(42, driver=driver), driver)

	def test_completed_steps(self):
		"""Test that accepted steps are recorded once and survive a reset"""
		posting = get_or_create_posting_status(self.delivery, request_payload={'delivery_id': self.delivery.pk})
		posting.complete_step('status', {'ok': True})
		posting.complete_step('status', {'ok': True})
		posting.mark_failure('ERP unreachable')

		posting = get_or_create_posting_status(self.delivery)
		self.assertEqual(posting.completed_steps, ['status'])
		self.assertEqual(posting.status, 'failed')

		posting.reset()
		posting.refresh_from_db()
		self.assertEqual(posting.status, 'pending')
		self.assertEqual(posting.completed_steps, ['status'])
