import base64
import logging
from requests import RequestException, Timeout, ConnectionError as RequestsConnectionError
from django.conf import settings

from .authenticate import ERPAuthentication

logger = logging.getLogger(__name__)

# Status codes that mean "try again later" rather than "this request is wrong"
TRANSIENT_STATUS_CODES = {408, 425, 429}


class ERPError(Exception):
	"""Base class for errors raised at the ERP boundary"""
	pass


class ERPConnectionError(ERPError):
	"""The ERP could not be reached or did not answer in time; the call may be retried"""
	pass


class ERPRejectionError(ERPError):
	"""The ERP understood the request and refused it; retrying will not help"""

	def __init__(self, message, status_code=None):
		super().__init__(message)
		self.status_code = status_code


class RESTServices:
	'''
		RESTful API for interacting with the ERP's shipment, document and tracking resources
	'''

	def __init__(self, auth: ERPAuthentication = None, timeout: float = None):
		self.auth = auth or ERPAuthentication()
		self.endpoint = self.auth.endpoint
		# Per-attempt timeout; a hung ERP call counts as a failed attempt
		self.timeout = timeout or settings.ERP_TIMEOUT
		self._session = None

	@property
	def session(self):
		if self._session is None:
			self._session = self.auth.get_session()
		return self._session

	def close(self):
		if self._session is not None:
			self._session.close()
			self._session = None

	def _request(self, method: str, path: str, idempotency_key: str = None, **kwargs):
		url = f"{self.endpoint}/{path.lstrip('/')}"
		headers = {'Content-Type': 'application/json'}
		if idempotency_key:
			headers['Idempotency-Key'] = idempotency_key

		try:
			response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
		except Timeout:
			raise ERPConnectionError(f"ERP request timed out after {self.timeout}s: {method} {path}")
		except RequestsConnectionError as e:
			raise ERPConnectionError(f"ERP unreachable: {e}")
		except RequestException as e:
			raise ERPConnectionError(f"ERP request failed: {e}")

		return self._handle_response(response, method, path)

	@staticmethod
	def _error_message(response) -> str:
		try:
			body = response.json()
		except ValueError:
			return response.text[:500]
		if isinstance(body, dict):
			error = body.get('error')
			if isinstance(error, dict):
				return str(error.get('message') or error)
			return str(error or body.get('message') or body)
		return str(body)

	def _handle_response(self, response, method: str, path: str):
		status_code = response.status_code

		if 200 <= status_code < 300:
			if not response.content:
				return {}
			try:
				return response.json()
			except ValueError:
				return {'raw': response.text}

		message = self._error_message(response)
		if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
			logger.warning(f"ERP returned {status_code} for {method} {path}: {message}")
			raise ERPConnectionError(f"ERP returned {status_code} for {method} {path}: {message}")

		logger.error(f"ERP rejected {method} {path} with {status_code}: {message}")
		raise ERPRejectionError(f"ERP rejected {method} {path} ({status_code}): {message}", status_code=status_code)

	def ping(self) -> bool:
		"""Returns True when the ERP answers its status endpoint"""
		try:
			self._request('GET', 'status')
			return True
		except ERPError as e:
			logger.info(f"ERP ping failed: {e}")
			return False

	def get_shipment(self, shipment_id):
		"""
			Fetch a shipment by its ERP id. Returns None when the ERP does not know it.
		"""
		try:
			return self._request('GET', f'shipments/{shipment_id}')
		except ERPRejectionError as e:
			if e.status_code == 404:
				return None
			raise

	def update_shipment_status(self, shipment_id, payload: dict, idempotency_key: str = None):
		return self._request('PUT', f'shipments/{shipment_id}', idempotency_key=idempotency_key, json=payload)

	def upload_document(self, shipment_ref: str, filename: str, content: bytes, idempotency_key: str = None,
						subdir: str = ''):
		"""
			Attach a file to the shipment's document store. The ERP overwrites a file with the
			same name, so a deterministic filename makes the upload safe to repeat.
		"""
		payload = {
			'filename': filename,
			'modulepart': 'expedition',
			'ref': shipment_ref,
			'subdir': subdir,
			'filecontent': base64.b64encode(content).decode('ascii'),
			'fileencoding': 'base64',
			'overwriteifexists': 1,
		}
		return self._request('POST', 'documents/upload', idempotency_key=idempotency_key, json=payload)

	def insert_tracking(self, shipment_id, payload: dict, idempotency_key: str = None):
		return self._request('POST', f'shipments/{shipment_id}/tracking', idempotency_key=idempotency_key, json=payload)
