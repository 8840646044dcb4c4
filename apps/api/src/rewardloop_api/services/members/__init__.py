from .member_service import MemberService, normalize_referral_code

__all__ = ["MemberService", "normalize_referral_code"]
