# lnvoucher/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from lnvoucher.models.voucher import VoucherRow  # noqa: F401
