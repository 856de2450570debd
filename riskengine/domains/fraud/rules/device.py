"""Device rules: anonymising networks and device trust."""

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import FraudRule, RuleCategory, TransactionContext
from .base import RuleEnvironment, RuleEvaluator


class DeviceEvaluator(RuleEvaluator):
    category = RuleCategory.DEVICE

    async def matches(
        self,
        rule: FraudRule,
        context: TransactionContext,
        session: AsyncSession,
        env: RuleEnvironment,
    ) -> bool:
        c = rule.conditions
        device_data = context.device_data

        if c.block_vpn and device_data.is_vpn:
            return True
        if c.block_proxy and device_data.is_proxy:
            return True
        if c.block_tor and device_data.is_tor:
            return True

        if not (c.require_trusted_device or c.flag_new_device):
            return False

        device_id = device_data.fingerprint_id
        device = await env.repositories.devices.get(session, device_id) if device_id else None

        if c.require_trusted_device and (device is None or not device.is_trusted_device()):
            return True
        if c.flag_new_device and device is not None and device.is_new():
            return True

        return False
