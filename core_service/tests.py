import os
import shutil
import tempfile
from django.test import TestCase, SimpleTestCase
from rest_framework.request import Request
from rest_framework.test import APIRequestFactory
from rest_framework_simplejwt.tokens import AccessToken

from overrides.authenticate import CombinedAuthentication
from overrides.rest_framework import APIResponse
from .helpers import decode_base64, write_bytes, remove_files
from .models import CustomUser


class CustomUserTest(TestCase):

	def test_roles(self):
		"""Test who counts as a supervisor"""
		driver = CustomUser.objects.create_user(username='driver1', password='testpass123')
		supervisor = CustomUser.objects.create_user(username='boss', password='testpass123', role=CustomUser.ROLE_SUPERVISOR)
		staff = CustomUser.objects.create_user(username='ops', password='testpass123', is_staff=True)

		self.assertTrue(driver.is_driver)
		self.assertFalse(driver.is_supervisor)
		self.assertTrue(supervisor.is_supervisor)
		self.assertTrue(staff.is_supervisor)


class HelpersTest(SimpleTestCase):

	def test_decode_base64(self):
		"""Test decoding with and without a data URI prefix"""
		self.assertEqual(decode_base64('aGVsbG8='), b'hello')
		self.assertEqual(decode_base64('data:text/plain;base64,aGVsbG8='), b'hello')
		for value in ('***', '', None):
			with self.assertRaises(ValueError):
				decode_base64(value)

	def test_write_and_remove(self):
		"""Test that files are written into new directories and removed once"""
		root = tempfile.mkdtemp()
		self.addCleanup(shutil.rmtree, root, True)

		path = write_bytes(b'data', os.path.join(root, 'a', 'b'), 'file.bin')

		with open(path, 'rb') as f:
			self.assertEqual(f.read(), b'data')
		self.assertEqual(remove_files(path, os.path.join(root, 'missing'), None), 1)
		self.assertFalse(os.path.exists(path))


class APIResponseTest(SimpleTestCase):

	def test_envelope(self):
		"""Test the message, status and data keys"""
		response = APIResponse('Done', 201, data={'id': 1})
		self.assertEqual(response.data, {'message': 'Done', 'data': {'id': 1}, 'status': 'success'})

		response = APIResponse('Nope', 422)
		self.assertEqual(response.data, {'message': 'Nope', 'status': 'failed'})


class CombinedAuthenticationTest(TestCase):

	def setUp(self):
		self.user = CustomUser.objects.create_user(username='driver1', password='testpass123')
		self.factory = APIRequestFactory()

	def authenticate(self, **headers):
		return CombinedAuthentication().authenticate(Request(self.factory.get('/', **headers)))

	def test_bearer_token(self):
		"""Test that a valid JWT authenticates its user"""
		token = AccessToken.for_user(self.user)
		user, _ = self.authenticate(HTTP_AUTHORIZATION=f'Bearer {token}')
		self.assertEqual(user, self.user)

	def test_invalid_token_falls_back(self):
		"""Test that a bad token falls back to the session, which is empty here"""
		self.assertIsNone(self.authenticate(HTTP_AUTHORIZATION='Bearer not-a-token'))
		self.assertIsNone(self.authenticate())
