from django.db import models
from django.contrib.auth.models import AbstractUser


class CustomUser(AbstractUser):
	ROLE_DRIVER = 'driver'
	ROLE_WAREHOUSE = 'warehouse_staff'
	ROLE_SUPERVISOR = 'supervisor'
	ROLE_ADMIN = 'admin'

	ROLE_CHOICES = [
		(ROLE_DRIVER, 'Driver'),
		(ROLE_WAREHOUSE, 'Warehouse Staff'),
		(ROLE_SUPERVISOR, 'Supervisor'),
		(ROLE_ADMIN, 'Administrator'),
	]

	SUPERVISOR_ROLES = (ROLE_SUPERVISOR, ROLE_ADMIN)

	role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_DRIVER)
	phone = models.CharField(max_length=20, null=True, blank=True)

	@property
	def is_supervisor(self):
		'''
			Supervisors may act on any shipment and subscribe to any channel.
		'''
		return self.is_staff or self.is_superuser or self.role in self.SUPERVISOR_ROLES

	@property
	def is_driver(self):
		return self.role == self.ROLE_DRIVER

	def __str__(self):
		full_name = f"{self.first_name} {self.last_name}".strip()
		return f"{full_name or self.username} ({self.get_role_display()})"

	class Meta:
		verbose_name_plural = 'Users'
