from django.core.paginator import InvalidPage
from rest_framework.response import Response
from rest_framework import serializers
from rest_framework.pagination import PageNumberPagination

class APIResponse(Response):
	def __init__(self, message: object, status: object, **kwargs: object) -> object:
		response_data = {
			'message': message,
		}

		data = kwargs.get("data")
		response_data.update({"data": data}) if data is not None else None

		if status in range(200, 299):
			response_data["status"] = "success"
		else:
			response_data["status"] = "failed"

		super().__init__(response_data, status=status)


class CustomPagination(PageNumberPagination):
	page_query_param = "page"
	page_size_query_param = "size"
	page_size = 15
	max_page_size = 100

	def paginate_queryset(self, queryset, request, view=None, order_by=None):
		if hasattr(queryset, 'order_by'):
			if order_by:
				queryset = queryset.order_by(order_by)
			elif not queryset.ordered:
				# Pagination over an unordered queryset is not stable
				queryset = queryset.order_by('-id')

		page_size = self.get_page_size(request)
		if not page_size:
			return None

		paginator = self.django_paginator_class(queryset, page_size)
		page_number = self.get_page_number(request, paginator)

		try:
			self.page = paginator.page(page_number)
		except InvalidPage as exc:
			msg = self.invalid_page_message.format(page_number=page_number, message=str(exc))
			raise serializers.ValidationError(msg)

		self.request = request
		return list(self.page)
