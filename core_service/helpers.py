# Miscellaneous methods to be used throughout the app
import os
import base64
import binascii


def decode_base64(base64_string):
	'''
		Decode a base64 string, with or without a data URI prefix, into bytes.
		Raises ValueError when the string is not valid base64.
	'''
	if not isinstance(base64_string, str) or not base64_string:
		raise ValueError("Expected a non-empty base64 string")
	# Get the part after the comma, if there is one
	encoded = base64_string.split(',')[-1].strip()
	try:
		return base64.b64decode(encoded, validate=True)
	except (binascii.Error, ValueError) as e:
		raise ValueError(f"Invalid base64 data: {e}")


def write_bytes(content, path, name):
	'''
		Write raw bytes to path/name, creating the directory when needed, and return the full path.
	'''
	if not os.path.exists(path):
		os.makedirs(path)
	fullpath = os.path.join(path, name)
	with open(fullpath, "wb") as f:
		f.write(content)
	return fullpath


def remove_files(*paths):
	'''
		Delete the given files, ignoring the ones that are already gone.
	'''
	removed = 0
	for path in paths:
		if path and os.path.exists(path):
			os.remove(path)
			removed += 1
	return removed
