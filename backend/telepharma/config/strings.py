# /telepharma/config/strings.py

# This file contains all user-facing strings, making them easy to manage,
# update, and eventually localize without changing conversation logic.

# --- Onboarding ---
WELCOME = (
    "Welcome to Telepharma Botswana! To start using our WhatsApp medication delivery service, "
    "you need to complete a quick registration process. This will help us serve you better. Let's begin!"
)
REGISTRATION_REQUIRED = "Please complete your registration to use our service. Send any message to begin."
REGISTRATION_COMPLETE = (
    "Thank you for registering, {first_name}! Your registration is now complete. "
    "You can now use our WhatsApp medication delivery service."
)

REG_FIRST_NAME = "Step 1: Please provide your first name."
REG_SURNAME = "Step 2: Please provide your surname."
REG_DATE_OF_BIRTH = "Step 3: Please provide your date of birth in the format DD/MM/YYYY."
REG_GENDER = "Step 4: Please select your gender. Type a number:"
REG_MEDICAL_AID_PROVIDER = "Step 5: Please select your medical aid provider. Type a number:"
REG_MEDICAL_AID_NUMBER = "Step 6: Please provide your medical aid number."
REG_SCHEME = "Step 7: Please specify your scheme (if applicable)."
REG_DEPENDENT_NUMBER = 'Step 8: If you have a dependent number, please provide it. Otherwise, type "{sentinel}".'

# --- Menus ---
MAIN_MENU = "Main Menu:"
MORE_OPTIONS = "More Options. Type a number:"
GREETING = "Hello {first_name}! How can I assist you today?"

# --- Ordering ---
MEDICATION_TYPE = (
    "Medication Details:\n"
    "Prescription: For prescribed medications\n"
    "OTC: For over-the-counter medications"
)
PRESCRIPTION_OPTIONS = "Prescription Options:"
SELECT_REFILL = "Select Your Refill. Type a number:"
SELECT_REFILL_EMPTY = "We could not find any previous orders to refill."
UPLOAD_PRESCRIPTION = "Please upload a photo of your prescription or type it out."
PRESCRIPTION_RECEIVED = "Prescription received. Thank you."
NEW_PRESCRIPTION_FOR = "Who is the prescription for?"
OTC_MEDICATION_LIST = "Please enter a list of medications you would like to order."
DELIVERY_METHOD = "Would you like the medication to be delivered, or will you be picking it up?"
DELIVERY_ADDRESS_TYPE = "Where do you want your medication to be delivered?"
ENTER_WORK_ADDRESS = "Please enter your work name and physical address."
ENTER_HOME_ADDRESS = "Please enter your home address."

ORDER_CONFIRMED_PRESCRIPTION = (
    "Thank you for providing your prescription, {first_name}. Your order number is {order_number}. "
    "We'll process your request, and a pharmacist will review it. Your medication will be delivered soon."
)
ORDER_CONFIRMED_DELIVERY = (
    "Thank you for your order, {first_name}! Your order number is {order_number}. "
    "Your medication will be delivered soon."
)
ORDER_CONFIRMED_PICKUP = (
    "Thank you for your order, {first_name}! Your order number is {order_number}. "
    "Your medication will be ready for pickup soon."
)
REFILL_OPTION = "Order {order_number} ({medication})"
UNSPECIFIED_MEDICATION = "unspecified"

# --- Order status ---
ENTER_ORDER_NUMBER = "Please enter your order number."
ANOTHER_ORDER_NUMBER = "Enter another order number."
ORDER_STATUS = "Your order status for order number {order_number} is: {status}"
ORDER_NOT_FOUND = "Order not found. Please check the order number and try again."

# --- Consultations & enquiries ---
ENTER_PHARMACY_ISSUE = "Please describe your issue or question for the pharmacy."
ENTER_DOCTOR_ISSUE = "Please describe your symptoms or question for the doctor."
ENTER_ENQUIRY = "Please enter your general enquiry."
PHARMACY_CONSULTATION_RECEIVED = "Thank you for your inquiry. A pharmacist will get back to you shortly."
DOCTOR_CONSULTATION_RECEIVED = "Thank you for your inquiry. A doctor will get back to you shortly."
GENERAL_ENQUIRY_RECEIVED = (
    "Thank you for your enquiry. Our customer support team will get back to you as soon as possible."
)

# --- Profile ---
ENTER_DEFAULT_ADDRESS = "Please enter your new default delivery address."
ADDRESS_UPDATED = "Your default delivery address has been updated to: {home_address}"

# --- Navigation hints ---
HINT_BACK = 'Enter "{back}" to go back to the previous step.'
HINT_BACK_TO_MENU = 'Enter "{back}" to go back to the main menu.'
HINT_ABORT = 'Enter "{abort}" to go back to the main menu.'

# --- Errors & session ---
INVALID_INPUT = "Invalid input. Please try again."
INVALID_OPTION = "Invalid option. Please try again."
INVALID_DATE = "Invalid date. Please use the format DD/MM/YYYY with a date in the past."
UNSUPPORTED_INPUT = "Sorry, we can only accept a typed reply at this step."
SESSION_EXPIRED = "Your session has timed out. Returning to the main menu."
ERROR_GENERAL = "Sorry, we encountered an error. Please try again or contact support if the issue persists."
ERROR_RETURNING_TO_MENU = "We've encountered an issue. Returning to the main menu."
ORDER_FAILED = "We encountered an error processing your order. Please try again or contact support."
LOOKUP_FAILED = "We encountered an error fetching your order status. Please try again later."
