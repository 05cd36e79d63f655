"""
API 路由聚合模块

路由模块说明：
- webhook: 支付网关回调（/payments/webhook）
- subscription: 用户订阅状态、结账、积分、支付记录
- admin: 运营对账（孤儿/死信事件处理）
- utils: 健康检查
"""
from fastapi import APIRouter

from seapay.api.routes import admin, subscription, utils, webhook

api_router = APIRouter()

api_router.include_router(webhook.router)  # /payments/*
api_router.include_router(subscription.router)  # /subscription/*
api_router.include_router(admin.router)  # /admin/*
api_router.include_router(utils.router)  # /utils/*
