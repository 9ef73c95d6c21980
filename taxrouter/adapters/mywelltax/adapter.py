from __future__ import annotations

from typing import Final

from taxrouter.adapters.mywelltax.affiliates import AffiliateQueries
from taxrouter.adapters.mywelltax.clients import ClientQueries
from taxrouter.adapters.mywelltax.discounts import DiscountQueries
from taxrouter.adapters.mywelltax.documents import DocumentQueries
from taxrouter.services.crypto.secret_box import SecretBox


class MyWellTaxAdapter(ClientQueries, AffiliateQueries, DiscountQueries, DocumentQueries):
    """Adapter for the MyWellTax schema: ``<prefix>.user`` rows with role 'user' are clients."""

    adapter_type: Final[str] = "mywelltax"

    def __init__(self, secret_box: SecretBox) -> None:
        # Only used to unseal identity numbers before masking them.
        self._secret_box = secret_box
