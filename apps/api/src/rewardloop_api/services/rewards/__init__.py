from .voucher_issuer import VoucherIssuer, build_redemption_link

__all__ = ["VoucherIssuer", "build_redemption_link"]
