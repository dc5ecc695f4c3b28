import logging
from rest_framework.authentication import BaseAuthentication, SessionAuthentication
from rest_framework.exceptions import AuthenticationFailed
from rest_framework_simplejwt.authentication import JWTAuthentication

logger = logging.getLogger(__name__)

class CombinedAuthentication(BaseAuthentication):
	def authenticate(self, request):
		jwt_auth = JWTAuthentication()
		session_auth = SessionAuthentication()

		# Try to authenticate using JWTAuthentication
		try:
			result = jwt_auth.authenticate(request)
			if result is not None:
				return result
		except AuthenticationFailed as e:
			logger.debug(f"JWT authentication failed: {e}")

		# If there is no usable bearer token, fall back to the Django session (admin, browsable API)
		return session_auth.authenticate(request)

	def authenticate_header(self, request):
		return 'Bearer'
