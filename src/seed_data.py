"""
Demo Knowledge Base
===================

Dữ liệu mẫu cho console và test: 4 category, 3 scenario, 3 problem, 2 script.
Problem "1" (payment) có đủ ClearPath và UnclearPath để chạy toàn bộ luồng quyết định.
"""

import logging
from datetime import datetime
from typing import List

from schema import (
    Category,
    Scenario,
    Problem,
    FAQLevel,
    VerificationStep,
    Script,
    ScriptVariable,
    Instruction,
    InstructionType,
    ClearPath,
    UnclearPath,
    PrimaryOption,
    SecondaryOption,
    Priority,
    ProblemStatus,
    User,
    UserRole,
)
from resolution_matrix import ResolutionMatrix
from taxonomy import KnowledgeBase

logger = logging.getLogger(__name__)


PAYMENT_PROBLEM_ID = "1"
PAYMENT_SCRIPT_ID = "1"
CANCELLATION_SCRIPT_ID = "2"


# ==============================================================================
# USERS
# ==============================================================================

def load_users() -> List[User]:
    return [
        User(id="1", name="Admin User", email="admin@clearpath.com", role=UserRole.ADMIN,
             created_at=datetime(2024, 1, 1)),
        User(id="2", name="Editor User", email="editor@clearpath.com", role=UserRole.EDITOR,
             created_at=datetime(2024, 1, 15)),
        User(id="3", name="Agent User", email="agent@clearpath.com", role=UserRole.AGENT,
             created_at=datetime(2024, 2, 1)),
    ]


# ==============================================================================
# TAXONOMY
# ==============================================================================

def load_categories() -> List[Category]:
    return [
        Category(
            id="generalSOP", name="General SOP", name_ar="الإجراءات العامة",
            description="Standard operating procedures and general guidelines",
            description_ar="الإجراءات التشغيلية المعيارية والإرشادات العامة",
            icon="FileText", color="gray", order=1,
        ),
        Category(
            id="customerSide", name="Customer Side", name_ar="جانب العميل",
            description="Customer-related issues and resolutions",
            description_ar="المشاكل والحلول المتعلقة بالعملاء",
            icon="User", color="blue", order=2,
        ),
        Category(
            id="riderSide", name="Rider Side", name_ar="جانب السائق",
            description="Rider and delivery-related problems",
            description_ar="مشاكل السائقين والتوصيل",
            icon="Car", color="green", order=3,
        ),
        Category(
            id="merchantSide", name="Merchant Side", name_ar="جانب التاجر",
            description="Merchant and business-related support",
            description_ar="دعم التجار والأعمال",
            icon="Store", color="purple", order=4,
        ),
    ]


def load_scenarios() -> List[Scenario]:
    return [
        Scenario(id="orderIssue", name="Order Issue", name_ar="مشكلة الطلب",
                 category_id="customerSide", icon="Package", color="orange", order=1),
        Scenario(id="nonOrderIssue", name="Non-Order Issue", name_ar="مشكلة غير متعلقة بالطلب",
                 category_id="customerSide", icon="AlertCircle", color="blue", order=2),
        Scenario(id="pickupIssue", name="Pickup Issue", name_ar="مشكلة الاستلام",
                 category_id="riderSide", icon="Truck", color="green", order=1),
    ]


# ==============================================================================
# SCRIPTS
# ==============================================================================

CUSTOMER_NAME = ScriptVariable(
    id="customer-name", name="Customer Name", placeholder="[Customer Name]",
    description="The customer's full name", is_required=True,
)
AGENT_NAME = ScriptVariable(
    id="agent-name", name="Agent Name", placeholder="[Agent Name]",
    description="The support agent's name", is_required=True,
)


def load_scripts() -> List[Script]:
    payment = Script(
        id=PAYMENT_SCRIPT_ID,
        title="Payment Failed - Card Declined",
        title_ar="فشل الدفع - رفض البطاقة",
        content=(
            "Hi [Customer Name],\n\n"
            "I understand your payment was declined. Let me help you resolve this issue right away.\n\n"
            "First, please check:\n"
            "1. Your card details are entered correctly\n"
            "2. Your card has sufficient funds\n"
            "3. Your card hasn't expired\n\n"
            "If everything looks correct, please try:\n"
            "- Using a different payment method\n"
            "- Contacting your bank to authorize the transaction\n\n"
            "Would you like me to send you a secure payment link to try again?\n\n"
            "Best regards,\n"
            "[Agent Name]"
        ),
        content_ar=(
            "مرحباً [اسم العميل]،\n\n"
            "أفهم أن دفعتك قد رُفضت. دعني أساعدك في حل هذه المشكلة على الفور.\n\n"
            "أولاً، يرجى التحقق من:\n"
            "1. تم إدخال تفاصيل بطاقتك بشكل صحيح\n"
            "2. بطاقتك لديها أموال كافية\n"
            "3. بطاقتك لم تنته صلاحيتها\n\n"
            "إذا كان كل شيء يبدو صحيحاً، يرجى المحاولة:\n"
            "- استخدام طريقة دفع مختلفة\n"
            "- الاتصال بالبنك للموافقة على المعاملة\n\n"
            "هل تريد مني إرسال رابط دفع آمن لك للمحاولة مرة أخرى؟\n\n"
            "مع أطيب التحيات،\n"
            "[اسم الوكيل]"
        ),
        category="Customer Side",
        tags=["payment", "card", "declined"],
        color="blue",
        is_template=True,
        variables=[CUSTOMER_NAME, AGENT_NAME],
        created_at=datetime(2024, 1, 10),
        updated_at=datetime(2024, 1, 20),
        created_by="admin",
    )

    cancellation = Script(
        id=CANCELLATION_SCRIPT_ID,
        title="Order Cancellation Request",
        title_ar="طلب إلغاء الطلب",
        content=(
            "Hello [Customer Name],\n\n"
            "I've received your request to cancel order #[ORDER_ID].\n\n"
            "I've successfully processed your cancellation and:\n"
            "✓ Your refund of [AMOUNT] will be processed within 3-5 business days\n"
            "✓ You'll receive a confirmation email shortly\n"
            "✓ The charge will be reversed to your original card or wallet\n\n"
            "Is there anything else I can help you with today?\n\n"
            "Thank you for choosing our service.\n\n"
            "Best regards,\n"
            "[Agent Name]"
        ),
        content_ar=(
            "مرحباً [اسم العميل]،\n\n"
            "لقد تلقيت طلبك لإلغاء الطلب رقم [رقم الطلب].\n\n"
            "لقد قمت بمعالجة الإلغاء بنجاح و:\n"
            "✓ سيتم معالجة استردادك بقيمة [المبلغ] خلال 3-5 أيام عمل\n"
            "✓ ستتلقى بريد إلكتروني للتأكيد قريباً\n"
            "✓ سيتم عكس الرسوم إلى طريقة الدفع الأصلية\n\n"
            "هل هناك أي شيء آخر يمكنني مساعدتك به اليوم؟\n\n"
            "شكراً لاختيارك خدمتنا.\n\n"
            "مع أطيب التحيات،\n"
            "[اسم الوكيل]"
        ),
        category="General SOP",
        tags=["cancellation", "refund", "order"],
        color="green",
        is_template=True,
        variables=[
            CUSTOMER_NAME,
            ScriptVariable(id="order-id", name="Order ID", placeholder="[ORDER_ID]",
                           description="The order identification number", is_required=True),
            ScriptVariable(id="amount", name="Refund Amount", placeholder="[AMOUNT]",
                           description="The refund amount", is_required=True),
            AGENT_NAME,
        ],
        created_at=datetime(2024, 1, 12),
        updated_at=datetime(2024, 1, 22),
        created_by="editor",
    )
    return [payment, cancellation]


# ==============================================================================
# RESOLUTION PATHS (problem 1)
# ==============================================================================

PRIMARY_LABELS = [
    ("primary-technical", "Technical Issue", "مشكلة تقنية"),
    ("primary-account", "Account Problem", "مشكلة في الحساب"),
    ("primary-payment", "Payment Issue", "مشكلة في الدفع"),
    ("primary-service", "Service Quality", "جودة الخدمة"),
    ("primary-policy", "Policy Question", "سؤال عن السياسة"),
    ("primary-other", "Other", "أخرى"),
]

SECONDARY_LABELS = [
    ("secondary-urgent", "Urgent", "عاجل"),
    ("secondary-standard", "Standard", "عادي"),
]

ESCALATION_SCRIPT = (
    "Hi [Customer Name],\n\n"
    "Thank you for contacting us regarding your payment issue.\n\n"
    "I've reviewed your account and found that [SPECIFIC_ISSUE]. Here's how we'll resolve this:\n\n"
    "1. [STEP_1]\n"
    "2. [STEP_2]\n"
    "3. [STEP_3]\n\n"
    "I've processed the necessary changes on our end. You should see the resolution within [TIMEFRAME].\n\n"
    "Is there anything else I can help you with today?\n\n"
    "Best regards,\n"
    "[Agent Name]"
)


def build_clear_path(script: Script) -> ClearPath:
    return ClearPath(
        id="clear-1",
        instructions=[
            Instruction(id="clear-1-1", order=1, type=InstructionType.ACTION,
                        content="Verify customer payment method",
                        content_ar="تحقق من طريقة دفع العميل"),
            Instruction(id="clear-1-2", order=2, type=InstructionType.INFO,
                        content="Send the card-declined script and offer a secure payment link",
                        content_ar="أرسل نص رفض البطاقة واعرض رابط دفع آمن"),
        ],
        script=script,
    )


def build_unclear_path() -> UnclearPath:
    path = UnclearPath(
        id="unclear-1",
        primary_options=[
            PrimaryOption(id=oid, label=label, label_ar=label_ar, order=i)
            for i, (oid, label, label_ar) in enumerate(PRIMARY_LABELS, start=1)
        ],
        secondary_options=[
            SecondaryOption(id=oid, label=label, label_ar=label_ar, order=i)
            for i, (oid, label, label_ar) in enumerate(SECONDARY_LABELS, start=1)
        ],
    )
    matrix = ResolutionMatrix(path)
    matrix.generate_mappings()

    # Chỉ ô (Payment Issue, Urgent) được điền sẵn; các ô khác để trống
    mapping = matrix.lookup("primary-payment", "secondary-urgent")
    mapping.instructions = [
        Instruction(id="urgent-payment-1", order=1, type=InstructionType.ACTION,
                    content="Verify customer account status and recent activity",
                    content_ar="تحقق من حالة حساب العميل والنشاط الأخير"),
        Instruction(id="urgent-payment-2", order=2, type=InstructionType.ACTION,
                    content="Check payment method validity and authorization",
                    content_ar="تحقق من صحة طريقة الدفع والتفويض"),
        Instruction(id="urgent-payment-3", order=3, type=InstructionType.INFO,
                    content="Review order history for similar issues",
                    content_ar="راجع تاريخ الطلبات للمشاكل المماثلة"),
    ]
    mapping.script = Script(
        id="urgent-payment-script",
        title="Payment Issue - Urgent",
        title_ar="مشكلة في الدفع - عاجل",
        content=ESCALATION_SCRIPT,
        category="Customer Side",
        tags=["payment", "urgent"],
        variables=[CUSTOMER_NAME, AGENT_NAME],
    )
    return path


# ==============================================================================
# PROBLEMS
# ==============================================================================

def load_problems(payment_script: Script) -> List[Problem]:
    return [
        Problem(
            id=PAYMENT_PROBLEM_ID,
            title="Customer unable to complete payment",
            title_ar="العميل غير قادر على إكمال الدفع",
            category_id="customerSide",
            scenario_id="orderIssue",
            priority=Priority.HIGH,
            status=ProblemStatus.RESOLVED,
            faq_levels=[
                FAQLevel(id="1-1", level=1, is_required=True,
                         question="Is the payment method valid?",
                         question_ar="هل طريقة الدفع صالحة؟",
                         answer="Check if the card is not expired and has sufficient funds",
                         answer_ar="تحقق من أن البطاقة لم تنته صلاحيتها ولديها أموال كافية"),
                FAQLevel(id="1-2", level=2,
                         question="Has the customer tried different payment methods?",
                         question_ar="هل جرب العميل طرق دفع مختلفة؟",
                         answer="Suggest trying a different card or payment method like digital wallet",
                         answer_ar="اقترح تجربة بطاقة مختلفة أو طريقة دفع مثل المحفظة الرقمية"),
            ],
            verification_steps=[
                VerificationStep(id="1-v1", order=1, is_required=True,
                                 step="Verify customer payment method",
                                 step_ar="تحقق من طريقة دفع العميل"),
                VerificationStep(id="1-v2", order=2,
                                 step="Check transaction history",
                                 step_ar="تحقق من تاريخ المعاملات"),
            ],
            clear_path=build_clear_path(payment_script),
            unclear_path=build_unclear_path(),
            tags=["payment", "card", "declined"],
            created_at=datetime(2024, 1, 15),
            created_by="admin",
        ),
        Problem(
            id="2",
            title="Order delivery delayed",
            title_ar="تأخير في توصيل الطلب",
            category_id="customerSide",
            scenario_id="orderIssue",
            priority=Priority.MEDIUM,
            status=ProblemStatus.INVESTIGATING,
            faq_levels=[
                FAQLevel(id="2-1", level=1, is_required=True,
                         question="What is the current order status?",
                         question_ar="ما هي حالة الطلب الحالية؟",
                         answer="Check the order tracking system for real-time updates",
                         answer_ar="تحقق من نظام تتبع الطلبات للحصول على التحديثات الفورية"),
            ],
            verification_steps=[
                VerificationStep(id="2-v1", order=1, is_required=True,
                                 step="Check order tracking status",
                                 step_ar="تحقق من حالة تتبع الطلب"),
            ],
            tags=["delivery", "delay", "tracking"],
            created_at=datetime(2024, 1, 20),
            created_by="editor",
        ),
        Problem(
            id="3",
            title="Account login issues",
            title_ar="مشاكل في تسجيل الدخول للحساب",
            category_id="customerSide",
            scenario_id="nonOrderIssue",
            priority=Priority.LOW,
            status=ProblemStatus.RESOLVED,
            faq_levels=[
                FAQLevel(id="3-1", level=1, is_required=True,
                         question="Is the customer using the correct email?",
                         question_ar="هل يستخدم العميل البريد الإلكتروني الصحيح؟",
                         answer="Verify the email address associated with the account",
                         answer_ar="تحقق من عنوان البريد الإلكتروني المرتبط بالحساب"),
            ],
            verification_steps=[
                VerificationStep(id="3-v1", order=1, is_required=True,
                                 step="Verify customer email address",
                                 step_ar="تحقق من عنوان البريد الإلكتروني للعميل"),
            ],
            tags=["login", "account", "password"],
            created_at=datetime(2024, 1, 25),
            created_by="admin",
        ),
    ]


def build_knowledge_base(audit=None) -> KnowledgeBase:
    """
    Nạp dữ liệu mẫu. Việc nạp không ghi audit; audit sink được gắn sau khi nạp xong.
    """
    kb = KnowledgeBase()
    for category in load_categories():
        kb.add_category(category)
    for scenario in load_scenarios():
        kb.add_scenario(scenario)

    scripts = load_scripts()
    for script in scripts:
        kb.add_script(script)
    for problem in load_problems(scripts[0]):
        kb.add_problem(problem)

    kb.audit = audit
    logger.info(
        f"Seeded knowledge base: {len(kb.list_categories())} categories, "
        f"{len(kb.list_problems())} problems, {len(kb.list_scripts())} scripts"
    )
    return kb
