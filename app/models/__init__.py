from app.models.billing import Invoice, InvoiceStatus, Payment, PaymentStatus  # noqa: F401
from app.models.catalog import Package, PackageType, Service, ServiceStatus  # noqa: F401
from app.models.customer import Customer, CustomerStatus  # noqa: F401
from app.models.network import MikrotikRouter  # noqa: F401
