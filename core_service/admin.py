from django.contrib import admin
from unfold.admin import ModelAdmin
from .models import CustomUser

class CustomUserAdmin(ModelAdmin):
	# Search fields
	search_fields = ['username', 'email', 'first_name', 'last_name', 'phone']
	list_display = ('username', 'email', 'role', 'is_active')
	list_filter = ('role', 'is_active', 'is_staff')
	exclude_from_view = ("password",)

	def get_fields(self, request, obj=None):
		"""
			Hide the password hash when editing an existing user.
		"""
		fields = super().get_fields(request, obj)
		return [field for field in fields if field not in self.exclude_from_view] if obj else fields


admin.site.register(CustomUser, CustomUserAdmin)
