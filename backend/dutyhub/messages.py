"""Stable message codes and user-facing descriptions.

Codes are domain-prefixed and never reused across failure paths so
clients can branch on them and logs can be correlated.
"""

UNEXPECTED_ERROR = "An unexpected error occurred"


class AuthCodes:
    INVALID_INPUT = "AUTH-366764"
    MISSING_IDENTIFIER = "AUTH-366765"
    MISSING_CODE = "AUTH-366766"
    MISSING_TOKEN = "AUTH-366767"
    INVALID_EMAIL = "AUTH-584337"
    INVALID_PASSWORD = "AUTH-612087"
    INVALID_USERNAME = "AUTH-612088"
    LOGIN_NOT_FOUND = "AUTH-809431"
    WRONG_PASSWORD = "AUTH-290694"
    MFA_MAIL_NOT_SENT = "AUTH-701245"
    RESET_MAIL_NOT_SENT = "AUTH-701246"
    EMAIL_VERIFICATION_MAIL_NOT_SENT = "AUTH-701247"
    TOKEN_NOT_GENERATED = "AUTH-564321"
    LOGIN_UNEXPECTED = "AUTH-347466"
    ALREADY_REGISTERED = "AUTH-432894"
    REGISTER_UNEXPECTED = "AUTH-943056"
    VERIFY_NOT_FOUND = "AUTH-808079"
    WRONG_CODE = "AUTH-755666"
    CODE_EXPIRED = "AUTH-221332"
    CODE_ALREADY_USED = "AUTH-221333"
    VERIFY_UNEXPECTED = "AUTH-562594"
    RESET_NOT_FOUND = "AUTH-432895"
    RESET_UNEXPECTED = "AUTH-562595"
    FORGOT_NOT_FOUND = "AUTH-432896"
    FORGOT_UNEXPECTED = "AUTH-943057"
    LOGOUT_NOT_FOUND = "AUTH-318220"
    LOGOUT_TOKEN_CHANGED = "AUTH-318221"
    LOGOUT_UNEXPECTED = "AUTH-943058"
    EMAIL_VERIFICATION_NOT_FOUND = "AUTH-808080"
    EMAIL_VERIFICATION_UNEXPECTED = "AUTH-943059"


class AuthMessages:
    INVALID_CREDENTIALS = "Invalid credentials"
    IDENTIFIER_REQUIRED = "Email or username is required"
    LOGIN_SUCCESSFUL = "Login successful"
    MFA_REQUIRED = "A verification code was sent to your email address"
    VERIFICATION_CODE_MAIL_NOT_SENT = "Verification code could not be sent"
    TOKEN_NOT_GENERATED = "Failed to generate token"
    ALREADY_REGISTERED = "User already exists"
    REGISTRATION_SUCCESSFUL = "Registration successful"
    USER_NOT_FOUND = "User not found"
    WRONG_VERIFICATION_CODE = "Verification code is wrong"
    VERIFICATION_CODE_EXPIRED = "Verification code has expired"
    VERIFICATION_CODE_USED = "Verification code was already used"
    VERIFICATION_SUCCESSFUL = "Verification successful"
    PASSWORD_RESET_SUCCESSFUL = "Password reset successful"
    RESET_CODE_SENT = "A password reset code was sent to your email address"
    EMAIL_VERIFICATION_SENT = "An email verification code was sent to your email address"
    NOT_LOGGED_IN = "No active session for this token"
    SESSION_CHANGED = "The session changed while logging out"
    LOGOUT_SUCCESSFUL = "Logout successful"


class ProjectCodes:
    INVALID_INPUT = "PRJ-400110"
    INVALID_DATES = "PRJ-400111"
    NOT_FOUND = "PRJ-404110"
    MANAGER_NOT_FOUND = "PRJ-404111"
    TEAM_NOT_FOUND = "PRJ-404112"
    TEAM_ALREADY_ASSIGNED = "PRJ-409110"
    UNEXPECTED = "PRJ-500110"


class TeamCodes:
    INVALID_INPUT = "TEAM-400210"
    NOT_FOUND = "TEAM-404210"
    MANAGER_NOT_FOUND = "TEAM-404211"
    USER_NOT_FOUND = "TEAM-404212"
    PROJECT_NOT_FOUND = "TEAM-404213"
    NOT_A_MEMBER = "TEAM-404214"
    ALREADY_MEMBER = "TEAM-409210"
    UNEXPECTED = "TEAM-500210"


class DutyCodes:
    INVALID_INPUT = "DUTY-400310"
    NOT_FOUND = "DUTY-404310"
    PROJECT_NOT_FOUND = "DUTY-404311"
    PARENT_NOT_FOUND = "DUTY-404312"
    REPORTER_NOT_FOUND = "DUTY-404313"
    USER_NOT_FOUND = "DUTY-404314"
    NOT_ASSIGNED = "DUTY-404315"
    PARENT_OTHER_PROJECT = "DUTY-400311"
    ALREADY_ASSIGNED = "DUTY-409311"
    DELETE_RESTRICTED = "DUTY-409310"
    UNEXPECTED = "DUTY-500310"


class CommentCodes:
    INVALID_INPUT = "CMT-400410"
    NOT_FOUND = "CMT-404410"
    DUTY_NOT_FOUND = "CMT-404411"
    REPLY_TARGET_NOT_FOUND = "CMT-404412"
    AUTHOR_NOT_FOUND = "CMT-404413"
    REPLY_OTHER_DUTY = "CMT-400411"
    UNEXPECTED = "CMT-500410"
