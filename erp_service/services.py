"""
Shipment data provider backed by the local mirror and the ERP
"""
import logging
from .models import Shipment
from .rest import RESTServices

logger = logging.getLogger(__name__)


class ShipmentProvider:
    """
    Resolves shipments for the delivery workflow. The local mirror is used
    when present; on a miss the shipment is fetched from the ERP and mirrored.
    """

    def __init__(self, client: RESTServices = None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = RESTServices()
        return self._client

    def get_shipment(self, shipment_id, refresh=False):
        """
        Return the Shipment for shipment_id or None when neither the mirror
        nor the ERP knows it. ERP connectivity errors propagate to the caller.
        """
        try:
            shipment_id = int(shipment_id)
        except (TypeError, ValueError):
            return None

        if not refresh:
            shipment = Shipment.objects.select_related('assigned_driver').filter(id=shipment_id).first()
            if shipment:
                return shipment

        logger.info(f"Shipment {shipment_id} not mirrored locally, fetching from the ERP")
        data = self.client.get_shipment(shipment_id)
        if not data:
            logger.warning(f"Shipment {shipment_id} is unknown to the ERP")
            return None
        data.setdefault('id', shipment_id)
        return Shipment.create_from_erp_data(data)
