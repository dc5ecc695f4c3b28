import os
from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from pathlib import Path
from dotenv import load_dotenv
from django.conf import settings
import logging

logger = logging.getLogger(__name__)

dotenv_path = os.path.join(Path(__file__).resolve().parent.parent, '.env')
load_dotenv(dotenv_path)

class ERPAuthentication:
	
	'''
		API key authentication for the ERP REST API
	'''
	
	def __init__(self, api_key: str = None, endpoint: str = None):
		'''
			Initialize the authentication class with the API key and the base URL.
		'''
		self.api_key = api_key or os.getenv('ERP_API_KEY') or settings.ERP_API_KEY
		self.endpoint = (endpoint or os.getenv('ERP_URL') or settings.ERP_URL).rstrip('/')
	
	@property
	def auth_headers(self) -> dict:
		return {
			'DOLAPIKEY': self.api_key,
			'Accept': 'application/json',
		}
	
	def get_session(self) -> Session:
		'''
			Build a pooled session. Connection-level retries are limited to reads; write calls
			are retried by the sync worker so that every attempt is accounted for.
		'''
		s = Session()
		retry_strategy = Retry(
			total=2,
			backoff_factor=0.5,
			status_forcelist=[502, 503, 504],
			allowed_methods=frozenset(['GET']),
			raise_on_status=False,
		)
		adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=10, pool_maxsize=10)
		s.mount("http://", adapter)
		s.mount("https://", adapter)
		s.headers.update(self.auth_headers)
		return s
