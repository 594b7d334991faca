import os, json, logging

logger = logging.getLogger(__name__)


class BrandCatalog:
    """id -> brand name. Accepts {"id": "Brand"} or {"id": {"brand": "Brand"}}."""

    def __init__(self, path=None):
        self.path = path
        self._brands = {}

    def load(self):
        brands = {}
        if self.path and os.path.exists(self.path):
            try:
                with open(self.path, "r") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Brand catalog %s unreadable: %s", self.path, e)
                data = {}
            if isinstance(data, dict):
                for k, v in data.items():
                    name = v.get("brand") if isinstance(v, dict) else v
                    if isinstance(name, str) and name:
                        brands[str(k)] = name
        self._brands = brands
        return self

    def lookup(self, brand_id):
        return self._brands.get(brand_id)

    def __len__(self):
        return len(self._brands)
