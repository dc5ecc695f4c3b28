from datetime import datetime, timezone


def format_datetime_to_iso8601(dt: datetime) -> str:
	"""
		Convert a datetime to an ISO 8601 string in UTC, to the second.
	"""
	if dt.tzinfo is not None:
		dt = dt.astimezone(timezone.utc)
	return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def to_unix_timestamp(dt: datetime) -> int:
	"""
		The ERP stores dates as unix timestamps.
	"""
	return int(dt.timestamp())
