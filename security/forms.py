from flask_wtf import FlaskForm
from wtforms import StringField, PasswordField, SubmitField, HiddenField
from wtforms.validators import DataRequired, Length, EqualTo


class LoginForm(FlaskForm):
    email = StringField("Correo", validators=[DataRequired(), Length(max=255)])
    password = PasswordField("Contraseña", validators=[DataRequired()])
    submit = SubmitField("Ingresar")


class TwoFAForm(FlaskForm):
    code = StringField("Código 2FA", validators=[DataRequired(), Length(min=6, max=7)])
    submit = SubmitField("Verificar")


class EnrollForm(FlaskForm):
    # Signed candidate secret shown on the previous page
    secret_token = HiddenField(validators=[DataRequired()])
    code = StringField("Código 2FA", validators=[DataRequired(), Length(min=6, max=7)])
    submit = SubmitField("Activar")


class ChangePasswordForm(FlaskForm):
    current = PasswordField("Contraseña actual", validators=[DataRequired()])
    password = PasswordField("Nueva contraseña", validators=[DataRequired(), Length(min=8)])
    confirm = PasswordField("Confirmar", validators=[DataRequired(), EqualTo('password')])
    submit = SubmitField("Cambiar contraseña")


class ConfirmForm(FlaskForm):
    submit = SubmitField("Confirmar")
