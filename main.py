# ===================================================================
# SEÇÃO 1: IMPORTS
# ===================================================================
import os
import io
import re
import uuid
import string
import logging
from dotenv import load_dotenv
load_dotenv()
import resend
from PIL import Image, UnidentifiedImageError
from flask import Flask, render_template, request, jsonify, make_response, Blueprint, send_from_directory
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager, UserMixin, login_required, current_user
from flask_wtf import FlaskForm
from wtforms import StringField, PasswordField, IntegerField, FloatField, SelectField, BooleanField, DateTimeField, Field
from wtforms.validators import DataRequired, InputRequired, Optional, Email, EqualTo, Length, NumberRange, ValidationError
from werkzeug.datastructures import MultiDict
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from functools import wraps
from datetime import datetime, timedelta
import random
from sqlalchemy import func, select, update, UniqueConstraint
from sqlalchemy.exc import IntegrityError
import jwt

from erros import ErroDominio, NaoAutorizado, AcessoNegado, NaoEncontrado, ValidacaoFalhou, \
    QuestoesInsuficientes, EstadoProvaInvalido, Conflito
from tipos import Role, StatusSimulado, Dificuldade, TipoQuestao, StatusProva, NotaConsiderada, \
    MostrarResultado, StatusTentativa, TipoNotificacao, valores
import gerador_provas
import correcao
import certificados
from gamificacao import NIVEIS, POLITICA_PADRAO, CONQUISTAS_PADRAO, Historico, RegistroTentativa, \
    calcular_nivel, conceder, progresso_conquista, ordenar_ranking

# ===================================================================
# SEÇÃO 2: CONFIGURAÇÃO DO APLICATIVO E EXTENSÕES
# ===================================================================
app = Flask(__name__)

logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO'),
                    format='%(asctime)s %(levelname)s [%(name)s] %(message)s')

app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'uma_chave_secreta_muito_forte_e_dificil_de_adivinhar')

# --- FORMA ROBUSTA DE CARREGAR A URL DO BANCO ---
database_uri = os.getenv('DATABASE_URL')
if not database_uri:
    raise ValueError("A variável de ambiente DATABASE_URL não foi encontrada. Verifique seu arquivo .env.")

if database_uri.startswith("postgres://"):
    database_uri = database_uri.replace("postgres://", "postgresql://", 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_uri
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

app.config['JWT_EXPIRACAO_HORAS'] = int(os.getenv('JWT_EXPIRACAO_HORAS', '24'))
app.config['UPLOAD_FOLDER'] = os.getenv('UPLOAD_FOLDER', os.path.join(app.root_path, 'uploads'))
app.config['RESEND_API_KEY'] = os.getenv('RESEND_API_KEY')
app.config['EMAIL_REMETENTE'] = os.getenv('EMAIL_REMETENTE', 'Simulados <nao-responda@simulados.com.br>')
app.config['CERTIFICADO_VALIDADE_DIAS'] = int(os.getenv('CERTIFICADO_VALIDADE_DIAS', '0')) or None
app.config['TOLERANCIA_TEMPO_SEGUNDOS'] = int(os.getenv('TOLERANCIA_TEMPO_SEGUNDOS', '30'))
app.config['MAX_CONTENT_LENGTH'] = 6 * 1024 * 1024

# --- REGRAS DE NEGÓCIO ---
# Centraliza os limites das provas e as tabelas da gamificação; qualquer
# uma delas pode ser substituída em app.config.
REGRAS_PROVA = {
    'min_questoes_publicacao': 10,
    'min_questoes_geracao': 10,
    'max_questoes_geracao': 200,
    'max_provas_por_geracao': 20,
}
UPLOAD_IMAGENS = {
    'formatos': {'JPEG': 'jpg', 'PNG': 'png', 'GIF': 'gif', 'WEBP': 'webp'},
    'tamanho_maximo': 5 * 1024 * 1024,
}
app.config.setdefault('REGRAS_PROVA', REGRAS_PROVA)
app.config.setdefault('NIVEIS', NIVEIS)
app.config.setdefault('POLITICA_XP', POLITICA_PADRAO)

db = SQLAlchemy(app)
migrate = Migrate(app, db)
login_manager = LoginManager(app)
login_manager.session_protection = None


def agora():
    return datetime.utcnow()


# ===================================================================
# SEÇÃO 3: AUTENTICAÇÃO E AUTORIZAÇÃO (API)
# ===================================================================

def gerar_token(usuario):
    return jwt.encode({
        'id': usuario.id,
        'exp': datetime.utcnow() + timedelta(hours=app.config['JWT_EXPIRACAO_HORAS'])
    }, app.config['SECRET_KEY'], algorithm="HS256")


@login_manager.request_loader
def carregar_usuario_do_token(req):
    """
    Resolve o usuário a partir do token JWT enviado no cabeçalho
    'x-access-token' ou 'Authorization: Bearer <token>'.
    """
    token = req.headers.get('x-access-token')
    if not token:
        autorizacao = req.headers.get('Authorization', '')
        if autorizacao.startswith('Bearer '):
            token = autorizacao[len('Bearer '):].strip()
    if not token:
        return None

    try:
        data = jwt.decode(token, app.config['SECRET_KEY'], algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        app.logger.info('Token expirado recebido em %s', req.path)
        return None
    except jwt.InvalidTokenError:
        app.logger.info('Token inválido recebido em %s', req.path)
        return None

    usuario = db.session.get(Usuario, data.get('id'))
    if usuario is None or not usuario.ativo:
        return None
    return usuario


@login_manager.unauthorized_handler
def unauthorized_callback():
    erro = NaoAutorizado('Login necessário para acessar este recurso.')
    return jsonify(erro.to_dict()), erro.status_http


def role_required(*roles):
    """Decorator que verifica se o usuário autenticado tem um dos perfis necessários."""
    def wrapper(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if current_user.role not in roles:
                raise AcessoNegado('Acesso não autorizado para este perfil.')
            return f(*args, **kwargs)
        return decorated_function
    return wrapper


def pode_gerenciar(ator_id, ator_role, dono_id):
    """Dono do recurso ou SUPERADMIN."""
    return ator_role == Role.SUPERADMIN or ator_id == dono_id


def exigir_gerencia(dono_id):
    if not pode_gerenciar(current_user.id, current_user.role, dono_id):
        raise AcessoNegado('Você não tem permissão para gerenciar este recurso.')


def obter_ou_404(modelo, objeto_id, mensagem):
    objeto = db.session.get(modelo, objeto_id)
    if objeto is None:
        raise NaoEncontrado(mensagem)
    return objeto


def filtro_enum(enumeracao, parametro):
    """Lê um filtro da query string; valores fora da enumeração viram 400."""
    valor = request.args.get(parametro)
    if not valor:
        return None
    try:
        return enumeracao(valor)
    except ValueError:
        raise ValidacaoFalhou(f'Valor inválido para "{parametro}".',
                              campo=parametro, permitidos=[e.value for e in enumeracao])


# ===================================================================
# SEÇÃO 4: MODELOS DO BANCO DE DADOS
# ===================================================================

def _iso(data):
    return data.isoformat() if data else None


def _enum(enumeracao, **kwargs):
    return db.Enum(enumeracao, native_enum=False, length=30, **kwargs)


class Usuario(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    nome = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(150), unique=True, nullable=False)
    password = db.Column(db.String(256), nullable=False)
    role = db.Column(_enum(Role), nullable=False, default=Role.ALUNO)
    ativo = db.Column(db.Boolean, default=True, nullable=False)
    precisa_trocar_senha = db.Column(db.Boolean, default=False, nullable=False)
    criado_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def is_active(self):
        return self.ativo

    def to_dict(self):
        return {'id': self.id, 'nome': self.nome, 'email': self.email, 'role': self.role.value,
                'precisa_trocar_senha': self.precisa_trocar_senha}


class Simulado(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    nome = db.Column(db.String(200), nullable=False)
    descricao = db.Column(db.Text, nullable=True)
    categoria = db.Column(db.String(100), nullable=False)
    subcategoria = db.Column(db.String(100), nullable=True)
    status = db.Column(_enum(StatusSimulado), nullable=False, default=StatusSimulado.ATIVO)
    docente_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), nullable=False)
    criado_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    atualizado_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    docente = db.relationship('Usuario', backref='simulados')
    questoes = db.relationship('Questao', backref='simulado', lazy=True, cascade="all, delete",
                               order_by=lambda: [Questao.ordem, Questao.id])
    provas = db.relationship('Prova', backref='simulado', lazy=True, cascade="all, delete")

    def to_dict(self, contagens=False):
        dados = {
            'id': self.id, 'nome': self.nome, 'descricao': self.descricao,
            'categoria': self.categoria, 'subcategoria': self.subcategoria,
            'status': self.status.value, 'docente_id': self.docente_id,
            'criado_em': _iso(self.criado_em), 'atualizado_em': _iso(self.atualizado_em),
        }
        if contagens:
            dados['total_questoes'] = len(self.questoes)
            dados['total_provas'] = len(self.provas)
        return dados


class Questao(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    simulado_id = db.Column(db.Integer, db.ForeignKey('simulado.id'), nullable=False)
    enunciado = db.Column(db.Text, nullable=False)
    tipo = db.Column(_enum(TipoQuestao), nullable=False, default=TipoQuestao.MULTIPLA_ESCOLHA_UNICA)
    dificuldade = db.Column(_enum(Dificuldade), nullable=False, default=Dificuldade.MEDIO)
    tags = db.Column(db.JSON, nullable=False, default=list)
    peso = db.Column(db.Integer, nullable=False, default=1)
    imagem_url = db.Column(db.String(500), nullable=True)
    explicacao = db.Column(db.Text, nullable=True)
    configuracao = db.Column(db.JSON, nullable=True)
    ativo = db.Column(db.Boolean, default=True, nullable=False)
    ordem = db.Column(db.Integer, nullable=False, default=0)
    criado_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    alternativas = db.relationship('Alternativa', backref='questao', lazy=True, cascade="all, delete-orphan",
                                   order_by=lambda: [Alternativa.ordem, Alternativa.id])

    def to_dict(self):
        return {
            'id': self.id, 'simulado_id': self.simulado_id, 'enunciado': self.enunciado,
            'tipo': self.tipo.value, 'dificuldade': self.dificuldade.value, 'tags': self.tags or [],
            'peso': self.peso, 'imagem_url': self.imagem_url, 'explicacao': self.explicacao,
            'configuracao': self.configuracao, 'ativo': self.ativo, 'ordem': self.ordem,
            'criado_em': _iso(self.criado_em),
            'alternativas': [a.to_dict() for a in self.alternativas],
        }

    def to_dict_aluno(self, semente=None):
        """Questão sem gabarito; `semente` embaralha as alternativas de forma estável."""
        alternativas = [{'id': a.id, 'texto': a.texto} for a in self.alternativas]
        if semente is not None or self.tipo == TipoQuestao.ORDENACAO:
            random.Random(f'{semente}-{self.id}').shuffle(alternativas)
        return {
            'id': self.id, 'enunciado': self.enunciado, 'tipo': self.tipo.value,
            'imagem_url': self.imagem_url, 'peso': self.peso,
            'configuracao': correcao.configuracao_publica(self.tipo, self.configuracao),
            'alternativas': alternativas,
        }


class Alternativa(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    questao_id = db.Column(db.Integer, db.ForeignKey('questao.id'), nullable=False)
    texto = db.Column(db.Text, nullable=False)
    correta = db.Column(db.Boolean, default=False, nullable=False)
    ordem = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {'id': self.id, 'texto': self.texto, 'correta': self.correta, 'ordem': self.ordem}


class Prova(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    simulado_id = db.Column(db.Integer, db.ForeignKey('simulado.id'), nullable=False)
    codigo = db.Column(db.String(30), unique=True, nullable=False)
    nome = db.Column(db.String(200), nullable=False)
    descricao = db.Column(db.Text, nullable=True)
    tempo_limite = db.Column(db.Integer, nullable=False, default=60)
    tentativas_max = db.Column(db.Integer, nullable=True)
    intervalo_tentativas = db.Column(db.Integer, nullable=False, default=0)
    nota_minima = db.Column(db.Float, nullable=False, default=70.0)
    nota_considerada = db.Column(_enum(NotaConsiderada), nullable=False, default=NotaConsiderada.MAIOR)
    mostrar_resultado = db.Column(_enum(MostrarResultado), nullable=False, default=MostrarResultado.IMEDIATO)
    data_resultado = db.Column(db.DateTime, nullable=True)
    embaralhar_questoes = db.Column(db.Boolean, default=True, nullable=False)
    embaralhar_alternativas = db.Column(db.Boolean, default=True, nullable=False)
    status = db.Column(_enum(StatusProva), nullable=False, default=StatusProva.RASCUNHO)
    criado_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    publicado_em = db.Column(db.DateTime, nullable=True)
    encerrado_em = db.Column(db.DateTime, nullable=True)

    questoes = db.relationship('ProvaQuestao', backref='prova', lazy=True, cascade="all, delete-orphan",
                               order_by='ProvaQuestao.ordem')
    tentativas = db.relationship('Tentativa', backref='prova', lazy=True, cascade="all, delete")

    @property
    def docente_id(self):
        return self.simulado.docente_id

    def publicar(self, minimo_questoes):
        if self.status != StatusProva.RASCUNHO:
            raise EstadoProvaInvalido('Apenas provas em rascunho podem ser publicadas.', status=self.status.value)
        total = len(self.questoes)
        if total < minimo_questoes:
            raise ValidacaoFalhou(
                f'A prova precisa ter pelo menos {minimo_questoes} questões para ser publicada.',
                total_questoes=total, minimo=minimo_questoes,
            )
        self.status = StatusProva.PUBLICADA
        self.publicado_em = agora()

    def encerrar(self):
        if self.status != StatusProva.PUBLICADA:
            raise EstadoProvaInvalido('Apenas provas publicadas podem ser encerradas.', status=self.status.value)
        self.status = StatusProva.ENCERRADA
        self.encerrado_em = agora()

    def to_dict(self, com_questoes=False):
        dados = {
            'id': self.id, 'simulado_id': self.simulado_id, 'codigo': self.codigo, 'nome': self.nome,
            'descricao': self.descricao, 'tempo_limite': self.tempo_limite,
            'tentativas_max': self.tentativas_max, 'intervalo_tentativas': self.intervalo_tentativas,
            'nota_minima': self.nota_minima, 'nota_considerada': self.nota_considerada.value,
            'mostrar_resultado': self.mostrar_resultado.value, 'data_resultado': _iso(self.data_resultado),
            'embaralhar_questoes': self.embaralhar_questoes,
            'embaralhar_alternativas': self.embaralhar_alternativas,
            'status': self.status.value, 'total_questoes': len(self.questoes),
            'criado_em': _iso(self.criado_em), 'publicado_em': _iso(self.publicado_em),
            'encerrado_em': _iso(self.encerrado_em),
        }
        if com_questoes:
            dados['questoes'] = [dict(pq.questao.to_dict(), prova_questao_id=pq.id, ordem=pq.ordem)
                                 for pq in self.questoes]
        return dados


class ProvaQuestao(db.Model):
    __tablename__ = 'prova_questao'
    id = db.Column(db.Integer, primary_key=True)
    prova_id = db.Column(db.Integer, db.ForeignKey('prova.id'), nullable=False)
    questao_id = db.Column(db.Integer, db.ForeignKey('questao.id'), nullable=False)
    ordem = db.Column(db.Integer, nullable=False)
    questao = db.relationship('Questao')
    __table_args__ = (UniqueConstraint('prova_id', 'questao_id', name='_prova_questao_uc'),)


class Turma(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    nome = db.Column(db.String(150), nullable=False)
    descricao = db.Column(db.Text, nullable=True)
    codigo = db.Column(db.String(6), unique=True, nullable=False)
    docente_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), nullable=False)
    ativa = db.Column(db.Boolean, default=True, nullable=False)
    criado_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    docente = db.relationship('Usuario', backref='turmas_lecionadas')
    alunos = db.relationship('TurmaAluno', backref='turma', lazy=True, cascade="all, delete")
    provas = db.relationship('TurmaProva', backref='turma', lazy=True, cascade="all, delete")

    def to_dict(self, detalhes=False):
        dados = {
            'id': self.id, 'nome': self.nome, 'descricao': self.descricao, 'codigo': self.codigo,
            'docente_id': self.docente_id, 'ativa': self.ativa, 'criado_em': _iso(self.criado_em),
            'total_alunos': len(self.alunos), 'total_provas': len(self.provas),
        }
        if detalhes:
            dados['alunos'] = [dict(ta.aluno.to_dict(), entrou_em=_iso(ta.entrou_em)) for ta in self.alunos]
            dados['provas'] = [tp.to_dict() for tp in self.provas]
        return dados


class TurmaAluno(db.Model):
    __tablename__ = 'turma_aluno'
    id = db.Column(db.Integer, primary_key=True)
    turma_id = db.Column(db.Integer, db.ForeignKey('turma.id'), nullable=False)
    aluno_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), nullable=False)
    entrou_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    aluno = db.relationship('Usuario')
    __table_args__ = (UniqueConstraint('turma_id', 'aluno_id', name='_turma_aluno_uc'),)


class TurmaProva(db.Model):
    __tablename__ = 'turma_prova'
    id = db.Column(db.Integer, primary_key=True)
    turma_id = db.Column(db.Integer, db.ForeignKey('turma.id'), nullable=False)
    prova_id = db.Column(db.Integer, db.ForeignKey('prova.id'), nullable=False)
    data_inicio = db.Column(db.DateTime, nullable=False)
    data_fim = db.Column(db.DateTime, nullable=False)
    criado_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    prova = db.relationship('Prova', backref=db.backref('turmas', cascade="all, delete"))
    __table_args__ = (UniqueConstraint('turma_id', 'prova_id', name='_turma_prova_uc'),)

    def to_dict(self):
        return {
            'id': self.id, 'turma_id': self.turma_id, 'prova_id': self.prova_id,
            'prova_nome': self.prova.nome, 'prova_status': self.prova.status.value,
            'data_inicio': _iso(self.data_inicio), 'data_fim': _iso(self.data_fim),
        }


class Tentativa(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    prova_id = db.Column(db.Integer, db.ForeignKey('prova.id'), nullable=False)
    aluno_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), nullable=False)
    numero = db.Column(db.Integer, nullable=False)
    status = db.Column(_enum(StatusTentativa), nullable=False, default=StatusTentativa.EM_ANDAMENTO)
    data_inicio = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    data_fim = db.Column(db.DateTime, nullable=True)
    tempo_gasto = db.Column(db.Integer, nullable=True, comment="Segundos")
    nota = db.Column(db.Float, nullable=True)
    aprovado = db.Column(db.Boolean, nullable=True)
    total_acertos = db.Column(db.Integer, nullable=True)
    total_questoes = db.Column(db.Integer, nullable=False, default=0)
    acertos_consecutivos = db.Column(db.Integer, nullable=False, default=0)

    aluno = db.relationship('Usuario', backref='tentativas')
    respostas = db.relationship('Resposta', backref='tentativa', lazy=True, cascade="all, delete")
    __table_args__ = (UniqueConstraint('prova_id', 'aluno_id', 'numero', name='_tentativa_numero_uc'),)

    def to_dict(self, com_nota=True):
        dados = {
            'id': self.id, 'prova_id': self.prova_id, 'aluno_id': self.aluno_id, 'numero': self.numero,
            'status': self.status.value, 'data_inicio': _iso(self.data_inicio), 'data_fim': _iso(self.data_fim),
            'tempo_gasto': self.tempo_gasto, 'total_questoes': self.total_questoes,
        }
        if com_nota:
            dados.update(nota=self.nota, aprovado=self.aprovado, total_acertos=self.total_acertos)
        return dados


class Resposta(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tentativa_id = db.Column(db.Integer, db.ForeignKey('tentativa.id'), nullable=False)
    prova_questao_id = db.Column(db.Integer, db.ForeignKey('prova_questao.id'), nullable=False)
    questao_id = db.Column(db.Integer, db.ForeignKey('questao.id'), nullable=False)
    resposta = db.Column(db.JSON, nullable=True)
    correta = db.Column(db.Boolean, nullable=True)
    pontuacao = db.Column(db.Float, nullable=True)
    marcada_revisao = db.Column(db.Boolean, default=False, nullable=False)
    tempo_resposta = db.Column(db.Integer, nullable=True)
    respondida_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    feedback_docente = db.Column(db.Text, nullable=True)
    feedback_em = db.Column(db.DateTime, nullable=True)
    __table_args__ = (UniqueConstraint('tentativa_id', 'prova_questao_id', name='_tentativa_questao_uc'),)

    def to_dict(self, com_correcao=False):
        dados = {
            'prova_questao_id': self.prova_questao_id, 'questao_id': self.questao_id,
            'resposta': self.resposta, 'marcada_revisao': self.marcada_revisao,
            'tempo_resposta': self.tempo_resposta,
            'feedback_docente': self.feedback_docente, 'feedback_em': _iso(self.feedback_em),
        }
        if com_correcao:
            dados.update(correta=self.correta, pontuacao=self.pontuacao)
        return dados


class Certificado(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    codigo = db.Column(db.String(12), unique=True, nullable=False, index=True)
    aluno_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), nullable=False)
    tentativa_id = db.Column(db.Integer, db.ForeignKey('tentativa.id'), unique=True, nullable=False)
    titulo = db.Column(db.String(200), nullable=False)
    categoria = db.Column(db.String(100), nullable=False)
    nota = db.Column(db.Float, nullable=False)
    nota_minima = db.Column(db.Float, nullable=False)
    data_emissao = db.Column(db.DateTime, nullable=False)
    data_validade = db.Column(db.DateTime, nullable=True)

    aluno = db.relationship('Usuario')
    tentativa = db.relationship('Tentativa')

    def to_dict(self):
        return {
            'codigo': self.codigo, 'aluno': self.aluno.nome, 'tentativa_id': self.tentativa_id,
            'titulo': self.titulo, 'categoria': self.categoria, 'nota': self.nota,
            'nota_minima': self.nota_minima, 'data_emissao': _iso(self.data_emissao),
            'data_validade': _iso(self.data_validade),
        }


class PerfilGamificacao(db.Model):
    __tablename__ = 'perfil_gamificacao'
    id = db.Column(db.Integer, primary_key=True)
    usuario_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), unique=True, nullable=False)
    xp = db.Column(db.Integer, nullable=False, default=0)
    nivel = db.Column(db.Integer, nullable=False, default=1)
    streak = db.Column(db.Integer, nullable=False, default=0)
    maior_streak = db.Column(db.Integer, nullable=False, default=0)
    aprovacoes_seguidas = db.Column(db.Integer, nullable=False, default=0)
    acertos_seguidos = db.Column(db.Integer, nullable=False, default=0)
    ultima_atividade = db.Column(db.DateTime, nullable=True)
    xp_atualizado_em = db.Column(db.DateTime, nullable=True)
    usuario = db.relationship('Usuario', backref=db.backref('perfil_gamificacao', uselist=False))


class EventoXP(db.Model):
    __tablename__ = 'evento_xp'
    id = db.Column(db.Integer, primary_key=True)
    usuario_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), nullable=False, index=True)
    tentativa_id = db.Column(db.Integer, db.ForeignKey('tentativa.id'), nullable=True)
    quantidade = db.Column(db.Integer, nullable=False)
    motivo = db.Column(db.String(100), nullable=False)
    criado_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)


class Conquista(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    codigo = db.Column(db.String(50), unique=True, nullable=False)
    nome = db.Column(db.String(100), nullable=False)
    descricao = db.Column(db.String(300), nullable=False)
    icone = db.Column(db.String(50), nullable=True)
    categoria = db.Column(db.String(30), nullable=False)
    xp_bonus = db.Column(db.Integer, nullable=False, default=0)
    condicao = db.Column(db.JSON, nullable=False)
    ordem = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            'codigo': self.codigo, 'nome': self.nome, 'descricao': self.descricao, 'icone': self.icone,
            'categoria': self.categoria, 'xp_bonus': self.xp_bonus,
        }


class UsuarioConquista(db.Model):
    __tablename__ = 'usuario_conquista'
    id = db.Column(db.Integer, primary_key=True)
    usuario_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), nullable=False)
    conquista_id = db.Column(db.Integer, db.ForeignKey('conquista.id'), nullable=False)
    desbloqueada_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    conquista = db.relationship('Conquista')
    __table_args__ = (UniqueConstraint('usuario_id', 'conquista_id', name='_usuario_conquista_uc'),)


class Notificacao(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    usuario_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), nullable=False, index=True)
    tipo = db.Column(_enum(TipoNotificacao), nullable=False)
    titulo = db.Column(db.String(200), nullable=False)
    mensagem = db.Column(db.Text, nullable=False)
    link = db.Column(db.String(300), nullable=True)
    lida = db.Column(db.Boolean, default=False, nullable=False)
    criado_em = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id, 'tipo': self.tipo.value, 'titulo': self.titulo, 'mensagem': self.mensagem,
            'link': self.link, 'lida': self.lida, 'criado_em': _iso(self.criado_em),
        }


class AuditLog(db.Model):
    __tablename__ = 'audit_log'
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    user_id = db.Column(db.Integer, db.ForeignKey('usuario.id'), nullable=True)
    user_email = db.Column(db.String(150), nullable=False)
    action = db.Column(db.String(100), nullable=False, index=True)  # Ex: 'LOGIN_SUCCESS', 'PROVA_PUBLISHED'
    target_type = db.Column(db.String(50), nullable=True, index=True)
    target_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)

    user = db.relationship('Usuario', backref='audit_logs')

    def __repr__(self):
        return f'<AuditLog {self.timestamp} - {self.user_email} - {self.action}>'


# ===================================================================
# SEÇÃO 5: FORMULÁRIOS (VALIDAÇÃO DO JSON DA API)
# ===================================================================

def _para_multidict(dados):
    # Valores nulos são tratados como ausentes; listas viram múltiplos valores
    itens = []
    for chave, valor in dados.items():
        if valor is None:
            continue
        if isinstance(valor, list):
            itens.extend((chave, item) for item in valor)
        else:
            itens.append((chave, valor))
    return MultiDict(itens)


class BooleanoJSON(BooleanField):
    """BooleanField que mantém o valor padrão quando a chave não vem no JSON."""

    def process_formdata(self, valuelist):
        if valuelist:
            super().process_formdata(valuelist)


class ListaJSON(Field):
    def process_formdata(self, valuelist):
        if valuelist:
            self.data = list(valuelist)

    def _value(self):
        return self.data or []


class ObjetoJSON(Field):
    def process_formdata(self, valuelist):
        if valuelist:
            self.data = valuelist[0]

    def pre_validate(self, form):
        if self.data is not None and not isinstance(self.data, dict):
            raise ValidationError('Deve ser um objeto JSON.')


class ApiForm(FlaskForm):
    """Formulário alimentado pelo corpo JSON da requisição, sem CSRF."""

    class Meta:
        csrf = False

    def __init__(self, dados=None, **kwargs):
        if dados is None:
            dados = request.get_json(silent=True)
        self.dados = dados if isinstance(dados, dict) else {}
        super().__init__(formdata=_para_multidict(self.dados), **kwargs)

    def fornecido(self, nome):
        return nome in self.dados

    def erros(self):
        # Erros do formulário como um todo vêm sob a chave None
        return {(nome or '_form'): mensagens for nome, mensagens in self.errors.items()}

    def validar(self, parcial=False):
        """Valida e levanta ValidacaoFalhou; `parcial` valida só os campos enviados."""
        if parcial:
            ok = True
            for nome in self.dados:
                if nome in self._fields:
                    inline = getattr(type(self), f'validate_{nome}', None)
                    ok = self._fields[nome].validate(self, [inline] if inline else ()) and ok
        else:
            ok = self.validate()
        if not ok:
            raise ValidacaoFalhou('Dados inválidos.', campos=self.erros())
        return self


class LoginForm(ApiForm):
    email = StringField('Email', validators=[DataRequired(), Email()])
    password = PasswordField('Senha', validators=[DataRequired()])


class RegistroForm(ApiForm):
    nome = StringField('Nome', validators=[DataRequired(), Length(min=2, max=150)])
    email = StringField('Email', validators=[DataRequired(), Email()])
    password = PasswordField('Senha', validators=[DataRequired(), Length(min=6, message='A senha deve ter ao menos 6 caracteres.')])
    role = SelectField('Perfil', choices=[(Role.ALUNO.value, Role.ALUNO.value), (Role.DOCENTE.value, Role.DOCENTE.value)],
                       default=Role.ALUNO.value)


class TrocarSenhaForm(ApiForm):
    senha_atual = PasswordField('Senha atual', validators=[DataRequired()])
    password = PasswordField('Nova Senha', validators=[DataRequired(), Length(min=6, message='A senha deve ter ao menos 6 caracteres.')])
    confirm_password = PasswordField('Confirmar Nova Senha', validators=[DataRequired(), EqualTo('password', message='As senhas devem ser iguais.')])


class SimuladoForm(ApiForm):
    nome = StringField('Nome', validators=[DataRequired(), Length(min=3, max=200)])
    descricao = StringField('Descrição', validators=[Optional()])
    categoria = StringField('Categoria', validators=[DataRequired(), Length(max=100)])
    subcategoria = StringField('Subcategoria', validators=[Optional(), Length(max=100)])
    status = SelectField('Status', choices=valores(StatusSimulado), default=StatusSimulado.ATIVO.value)


class StatusSimuladoForm(ApiForm):
    status = SelectField('Status', choices=valores(StatusSimulado), validators=[InputRequired()])


def validar_estrutura_questao(tipo, alternativas, configuracao):
    """Erros estruturais de uma questão conforme o tipo; lista vazia se estiver ok."""
    erros = []
    tipo = TipoQuestao(tipo)
    if any(not isinstance(a, dict) or not str(a.get('texto') or '').strip() for a in alternativas):
        erros.append('Toda alternativa deve ter um texto.')
        return erros

    corretas = sum(1 for a in alternativas if a.get('correta'))
    if tipo == TipoQuestao.MULTIPLA_ESCOLHA_UNICA:
        if len(alternativas) < 2:
            erros.append('Informe ao menos 2 alternativas.')
        if corretas != 1:
            erros.append('Marque exatamente uma alternativa correta.')
    elif tipo == TipoQuestao.MULTIPLA_ESCOLHA_MULTIPLA:
        if len(alternativas) < 2:
            erros.append('Informe ao menos 2 alternativas.')
        if corretas < 1:
            erros.append('Marque ao menos uma alternativa correta.')
    elif tipo == TipoQuestao.ORDENACAO:
        if len(alternativas) < 2 and len((configuracao or {}).get('itens') or []) < 2:
            erros.append('Informe ao menos 2 itens para ordenar.')
    else:
        chaves = {
            TipoQuestao.ASSOCIACAO: 'conexoesCorretas',
            TipoQuestao.LACUNA: 'lacunas',
            TipoQuestao.DRAG_DROP: 'zonas',
            TipoQuestao.HOTSPOT: 'areas',
            TipoQuestao.COMANDO: 'respostasAceitas',
        }
        if not (configuracao or {}).get(chaves[tipo]):
            erros.append(f'A configuração da questão deve conter "{chaves[tipo]}".')
    return erros


class QuestaoForm(ApiForm):
    enunciado = StringField('Enunciado', validators=[DataRequired(), Length(min=5)])
    tipo = SelectField('Tipo', choices=valores(TipoQuestao), default=TipoQuestao.MULTIPLA_ESCOLHA_UNICA.value)
    dificuldade = SelectField('Dificuldade', choices=valores(Dificuldade), default=Dificuldade.MEDIO.value)
    tags = ListaJSON('Tags', default=list)
    peso = IntegerField('Peso', default=1, validators=[Optional(), NumberRange(min=1, max=10)])
    imagem_url = StringField('Imagem', validators=[Optional(), Length(max=500)])
    explicacao = StringField('Explicação', validators=[Optional()])
    alternativas = ListaJSON('Alternativas', default=list)
    configuracao = ObjetoJSON('Configuração')
    ativo = BooleanoJSON('Ativo', default=True)

    def validate_tags(self, field):
        if any(not isinstance(t, str) for t in field.data or []):
            raise ValidationError('Tags devem ser textos.')

    def validate(self, extra_validators=None):
        if not super().validate(extra_validators):
            return False
        erros = validar_estrutura_questao(self.tipo.data, self.alternativas.data or [], self.configuracao.data)
        if erros:
            self.form_errors.extend(erros)
            return False
        return True


class ConfiguracaoProvaForm(ApiForm):
    nome = StringField('Nome', validators=[Optional(), Length(min=3, max=200)])
    descricao = StringField('Descrição', validators=[Optional()])
    tempo_limite = IntegerField('Tempo limite', default=60, validators=[Optional(), NumberRange(min=1, max=480)])
    tentativas_max = IntegerField('Tentativas', validators=[Optional(), NumberRange(min=1, max=100)])
    intervalo_tentativas = IntegerField('Intervalo', default=0, validators=[Optional(), NumberRange(min=0, max=168)])
    nota_minima = FloatField('Nota mínima', default=70.0, validators=[Optional(), NumberRange(min=0, max=100)])
    nota_considerada = SelectField('Nota considerada', choices=valores(NotaConsiderada),
                                   default=NotaConsiderada.MAIOR.value)
    mostrar_resultado = SelectField('Mostrar resultado', choices=valores(MostrarResultado),
                                    default=MostrarResultado.IMEDIATO.value)
    data_resultado = DateTimeField('Data do resultado', format=['%Y-%m-%dT%H:%M:%S', '%Y-%m-%dT%H:%M', '%Y-%m-%d %H:%M:%S'],
                                   validators=[Optional()])
    embaralhar_questoes = BooleanoJSON('Embaralhar questões', default=True)
    embaralhar_alternativas = BooleanoJSON('Embaralhar alternativas', default=True)

    CAMPOS_PROVA = ('nome', 'descricao', 'tempo_limite', 'tentativas_max', 'intervalo_tentativas', 'nota_minima',
                    'nota_considerada', 'mostrar_resultado', 'data_resultado', 'embaralhar_questoes',
                    'embaralhar_alternativas')

    def validate_data_resultado(self, field):
        if self.mostrar_resultado.data == MostrarResultado.DATA.value and field.data is None:
            raise ValidationError('Informe a data de liberação do resultado.')

    def aplicar(self, prova, parcial=False):
        for nome in self.CAMPOS_PROVA:
            if parcial and not self.fornecido(nome):
                continue
            valor = self[nome].data
            if nome == 'nome' and not valor:
                continue
            if nome == 'nota_considerada':
                valor = NotaConsiderada(valor)
            elif nome == 'mostrar_resultado':
                valor = MostrarResultado(valor)
            setattr(prova, nome, valor)


class GeracaoProvasForm(ConfiguracaoProvaForm):
    quantidade_provas = IntegerField('Quantidade de provas', default=1,
                                     validators=[Optional(), NumberRange(min=1, max=REGRAS_PROVA['max_provas_por_geracao'])])
    questoes_por_prova = IntegerField('Questões por prova', validators=[
        InputRequired(message='Informe a quantidade de questões por prova.'),
        NumberRange(min=REGRAS_PROVA['min_questoes_geracao'], max=REGRAS_PROVA['max_questoes_geracao'])])
    # frações chegam intactas; normalizar_percentuais as rejeita
    percentual_facil = FloatField('Fácil', validators=[Optional(), NumberRange(min=0, max=100)])
    percentual_medio = FloatField('Médio', validators=[Optional(), NumberRange(min=0, max=100)])
    percentual_dificil = FloatField('Difícil', validators=[Optional(), NumberRange(min=0, max=100)])
    embaralhar = BooleanoJSON('Sortear questões', default=True)
    substituir = BooleanoJSON('Substituir entre níveis', default=False)
    permitir_repeticao = BooleanoJSON('Permitir repetição', default=False)
    dificuldades = ListaJSON('Dificuldades', default=list)
    tags = ListaJSON('Tags', default=list)

    def validate_dificuldades(self, field):
        validas = {d.value for d in Dificuldade}
        if any(d not in validas for d in field.data or []):
            raise ValidationError('Dificuldade inválida.')

    def percentuais(self):
        campos = {Dificuldade.FACIL: self.percentual_facil, Dificuldade.MEDIO: self.percentual_medio,
                  Dificuldade.DIFICIL: self.percentual_dificil}
        if all(c.data is None for c in campos.values()):
            return None
        return gerador_provas.normalizar_percentuais({d: c.data or 0 for d, c in campos.items()})


class RespostaForm(ApiForm):
    prova_questao_id = IntegerField('Questão', validators=[InputRequired()])
    resposta = ObjetoJSON('Resposta')
    marcada_revisao = BooleanoJSON('Marcada para revisão', default=False)
    tempo_resposta = IntegerField('Tempo de resposta', validators=[Optional(), NumberRange(min=0)])


class FeedbackForm(ApiForm):
    prova_questao_id = IntegerField('Questão', validators=[InputRequired()])
    feedback = StringField('Feedback', validators=[DataRequired(message='O feedback não pode ser vazio.'), Length(max=5000)])


class TurmaForm(ApiForm):
    nome = StringField('Nome', validators=[DataRequired(), Length(min=3, max=150)])
    descricao = StringField('Descrição', validators=[Optional()])
    ativa = BooleanoJSON('Ativa', default=True)


class AlunoTurmaForm(ApiForm):
    aluno_id = IntegerField('Aluno', validators=[Optional()])
    email = StringField('Email', validators=[Optional(), Email()])

    def validate(self, extra_validators=None):
        if not super().validate(extra_validators):
            return False
        if not self.aluno_id.data and not self.email.data:
            self.form_errors.append('Informe o aluno_id ou o email do aluno.')
            return False
        return True


class AtribuicaoProvaForm(ApiForm):
    prova_id = IntegerField('Prova', validators=[InputRequired()])
    data_inicio = DateTimeField('Início', format=['%Y-%m-%dT%H:%M:%S', '%Y-%m-%dT%H:%M', '%Y-%m-%d %H:%M:%S'],
                                validators=[InputRequired()])
    data_fim = DateTimeField('Fim', format=['%Y-%m-%dT%H:%M:%S', '%Y-%m-%dT%H:%M', '%Y-%m-%d %H:%M:%S'],
                             validators=[InputRequired()])

    def validate_data_fim(self, field):
        if self.data_inicio.data and field.data and field.data <= self.data_inicio.data:
            raise ValidationError('A data de fim deve ser posterior à data de início.')


class EntrarTurmaForm(ApiForm):
    codigo = StringField('Código', validators=[DataRequired(), Length(min=6, max=6)])


# ===================================================================
# SEÇÃO 6: SERVIÇOS (AUDITORIA, NOTIFICAÇÕES, GAMIFICAÇÃO)
# ===================================================================

def log_audit(action, target_obj=None, details=None, user_email=None):
    """
    Registra um evento de auditoria. Falhas são registradas no log e nunca
    interrompem a requisição.
    """
    try:
        ip_address = None
        if request:
            ip_address = request.headers.get('X-Forwarded-For', request.remote_addr or '').split(',')[0].strip() or None

        log_entry = AuditLog(action=action, details=details, ip_address=ip_address)

        if current_user and current_user.is_authenticated:
            log_entry.user_id = current_user.id
            log_entry.user_email = current_user.email
        else:
            log_entry.user_email = user_email or 'Sistema'

        if target_obj is not None and hasattr(target_obj, 'id'):
            log_entry.target_type = target_obj.__class__.__name__
            log_entry.target_id = target_obj.id

        db.session.add(log_entry)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Erro ao salvar log de auditoria (%s)', action)


def criar_notificacao(usuario_id, tipo, titulo, mensagem, link=None):
    notificacao = Notificacao(usuario_id=usuario_id, tipo=tipo, titulo=titulo, mensagem=mensagem, link=link)
    db.session.add(notificacao)
    return notificacao


def notificar_nova_prova(turma_prova):
    prova = turma_prova.prova
    for membro in turma_prova.turma.alunos:
        criar_notificacao(
            membro.aluno_id, TipoNotificacao.NOVA_PROVA, 'Nova prova disponível',
            f'A prova "{prova.nome}" foi disponibilizada na turma {turma_prova.turma.nome}.',
            link=f'/aluno/provas/{prova.id}',
        )


def enviar_email(destinatario, assunto, html):
    """Envia e-mail via Resend quando a chave está configurada."""
    chave = app.config.get('RESEND_API_KEY')
    if not chave:
        return False
    try:
        resend.api_key = chave
        resend.Emails.send({
            "from": app.config['EMAIL_REMETENTE'],
            "to": [destinatario],
            "subject": assunto,
            "html": html,
        })
        return True
    except Exception:
        app.logger.exception('Erro ao enviar e-mail com Resend para %s', destinatario)
        return False


def sincronizar_conquistas(catalogo=CONQUISTAS_PADRAO):
    """Cria ou atualiza o catálogo de conquistas a partir da tabela padrão."""
    existentes = {c.codigo: c for c in Conquista.query.all()}
    for ordem, dados in enumerate(catalogo):
        conquista = existentes.get(dados['codigo']) or Conquista(codigo=dados['codigo'])
        for campo in ('nome', 'descricao', 'icone', 'categoria', 'xp_bonus', 'condicao'):
            setattr(conquista, campo, dados[campo])
        conquista.ordem = ordem
        db.session.add(conquista)
    db.session.commit()


def obter_perfil(usuario_id):
    perfil = PerfilGamificacao.query.filter_by(usuario_id=usuario_id).first()
    if perfil is None:
        perfil = PerfilGamificacao(usuario_id=usuario_id, xp=0, nivel=1, streak=0, maior_streak=0,
                                   aprovacoes_seguidas=0, acertos_seguidos=0)
        db.session.add(perfil)
        db.session.flush()
    return perfil


def historico_gamificacao(aluno_id):
    """Histórico de tentativas submetidas do aluno, no formato da gamificação."""
    prazos = dict(
        db.session.query(TurmaProva.prova_id, func.max(TurmaProva.data_fim))
        .join(TurmaAluno, TurmaAluno.turma_id == TurmaProva.turma_id)
        .filter(TurmaAluno.aluno_id == aluno_id)
        .group_by(TurmaProva.prova_id).all()
    )
    tentativas = Tentativa.query.filter_by(aluno_id=aluno_id, status=StatusTentativa.SUBMETIDA).all()
    return Historico([
        RegistroTentativa(
            tentativa_id=t.id, simulado_id=t.prova.simulado_id, categoria=t.prova.simulado.categoria,
            nota=t.nota, aprovado=bool(t.aprovado), data_fim=t.data_fim, tempo_gasto=t.tempo_gasto,
            tempo_limite=t.prova.tempo_limite, acertos_consecutivos=t.acertos_consecutivos,
            prazo=prazos.get(t.prova_id),
        )
        for t in tentativas
    ])


def premiar_tentativa(tentativa):
    """Aplica XP, nível e conquistas de uma tentativa recém-submetida (sem commit)."""
    perfil = obter_perfil(tentativa.aluno_id)
    historico = historico_gamificacao(tentativa.aluno_id)
    registro = next(r for r in historico.tentativas if r.tentativa_id == tentativa.id)

    catalogo = Conquista.query.order_by(Conquista.ordem).all()
    desbloqueadas = {uc.conquista.codigo for uc in UsuarioConquista.query.filter_by(usuario_id=tentativa.aluno_id)}

    premiacao = conceder(registro, historico, perfil.xp, catalogo, desbloqueadas,
                         politica=app.config['POLITICA_XP'], niveis=app.config['NIVEIS'])

    momento = agora()
    for motivo, quantidade in premiacao.eventos:
        db.session.add(EventoXP(usuario_id=tentativa.aluno_id, tentativa_id=tentativa.id,
                                quantidade=quantidade, motivo=motivo, criado_em=momento))
    for conquista in premiacao.novas_conquistas:
        db.session.add(UsuarioConquista(usuario_id=tentativa.aluno_id, conquista_id=conquista.id,
                                        desbloqueada_em=momento))
        criar_notificacao(tentativa.aluno_id, TipoNotificacao.SISTEMA, 'Conquista desbloqueada!',
                          f'Você desbloqueou a conquista "{conquista.nome}".', link='/gamificacao/conquistas')

    perfil.xp += premiacao.xp_delta
    perfil.nivel = premiacao.nivel_novo
    perfil.streak = historico.streak_atual(momento.date())
    perfil.maior_streak = max(perfil.maior_streak, historico.maior_streak())
    perfil.aprovacoes_seguidas = historico.aprovacoes_seguidas_atuais()
    perfil.acertos_seguidos = max(perfil.acertos_seguidos, historico.maior_acertos_consecutivos())
    perfil.ultima_atividade = tentativa.data_fim
    if premiacao.xp_delta:
        perfil.xp_atualizado_em = momento

    if premiacao.level_ups > 0:
        nome_nivel = calcular_nivel(perfil.xp, app.config['NIVEIS']).nome
        criar_notificacao(tentativa.aluno_id, TipoNotificacao.SISTEMA, 'Você subiu de nível!',
                          f'Parabéns! Você alcançou o nível {perfil.nivel} ({nome_nivel}).', link='/gamificacao/me')

    app.logger.info('Tentativa %s: +%s XP para o usuário %s (%s novas conquistas)',
                    tentativa.id, premiacao.xp_delta, tentativa.aluno_id, len(premiacao.novas_conquistas))
    return premiacao


def gerar_codigo_turma():
    alfabeto = string.ascii_uppercase + string.digits
    while True:
        codigo = ''.join(random.choices(alfabeto, k=6))
        if not Turma.query.filter_by(codigo=codigo).first():
            return codigo


def gerar_senha_provisoria():
    # sem caracteres ambíguos (0/O, 1/l/I)
    return ''.join(random.choices('abcdefghjkmnpqrstuvwxyzABCDEFGHJKLMNPQRSTUVWXYZ23456789', k=8))


def gerar_codigo_prova(simulado):
    """Código PREFIXO-ANO-NNN, sequencial por prefixo e ano."""
    prefixo = re.sub(r'[^A-Za-z0-9]', '', simulado.categoria or '')[:4].upper() or 'PROV'
    ano = agora().year
    base = f'{prefixo}-{ano}-'
    codigos = [c for (c,) in db.session.query(Prova.codigo).filter(Prova.codigo.like(f'{base}%'))]
    sequenciais = [int(c[len(base):]) for c in codigos if c[len(base):].isdigit()]
    return f'{base}{max(sequenciais, default=0) + 1:03d}'


def pool_disponivel(simulado, dificuldades=None, tags=None):
    """
    Questões ativas do simulado, em ordem de criação, sem as que já estão em
    provas publicadas do mesmo simulado.
    """
    usadas = select(ProvaQuestao.questao_id).join(Prova, Prova.id == ProvaQuestao.prova_id).where(
        Prova.simulado_id == simulado.id, Prova.status == StatusProva.PUBLICADA)
    query = Questao.query.filter(Questao.simulado_id == simulado.id, Questao.ativo.is_(True),
                                 ~Questao.id.in_(usadas))
    if dificuldades:
        query = query.filter(Questao.dificuldade.in_([Dificuldade(d) for d in dificuldades]))
    questoes = query.order_by(Questao.criado_em, Questao.id).all()
    if tags:
        desejadas = set(tags)
        questoes = [q for q in questoes if desejadas & set(q.tags or [])]
    return questoes


def janela_disponivel(aluno_id, prova_id, momento):
    return TurmaProva.query.join(Turma, Turma.id == TurmaProva.turma_id) \
        .join(TurmaAluno, TurmaAluno.turma_id == Turma.id).filter(
        TurmaAluno.aluno_id == aluno_id, TurmaProva.prova_id == prova_id, Turma.ativa.is_(True),
        TurmaProva.data_inicio <= momento, TurmaProva.data_fim >= momento,
    ).first()


def questoes_da_tentativa(tentativa):
    """Questões da prova na ordem em que este aluno as vê."""
    prova = tentativa.prova
    ordenadas = list(prova.questoes)
    if prova.embaralhar_questoes:
        random.Random(tentativa.id).shuffle(ordenadas)
    semente = tentativa.id if prova.embaralhar_alternativas else None
    return [dict(pq.questao.to_dict_aluno(semente), prova_questao_id=pq.id) for pq in ordenadas]


def resultado_liberado(prova):
    return correcao.resultado_visivel(prova.mostrar_resultado, prova.data_resultado, agora())


def serializar_resultado(tentativa):
    prova = tentativa.prova
    respostas = {r.prova_questao_id: r for r in tentativa.respostas}
    questoes = []
    for pq in prova.questoes:
        resposta = respostas.get(pq.id)
        questoes.append({
            'prova_questao_id': pq.id, 'ordem': pq.ordem, 'questao': pq.questao.to_dict(),
            'resposta': resposta.resposta if resposta else None,
            'correta': bool(resposta and resposta.correta),
            'pontuacao': resposta.pontuacao if resposta else 0.0,
            'feedback_docente': resposta.feedback_docente if resposta else None,
            'feedback_em': _iso(resposta.feedback_em) if resposta else None,
        })
    return {
        'resultado_disponivel': True,
        'tentativa': tentativa.to_dict(),
        'nota_minima': prova.nota_minima,
        'questoes': questoes,
    }


# ===================================================================
# SEÇÃO 7: TRATAMENTO DE ERROS
# ===================================================================

@app.errorhandler(ErroDominio)
def tratar_erro_dominio(erro):
    db.session.rollback()
    if erro.status_http >= 409:
        app.logger.info('%s: %s', erro.tipo, erro.mensagem)
    return jsonify(erro.to_dict()), erro.status_http


@app.errorhandler(HTTPException)
def tratar_erro_http(erro):
    return jsonify({'error': erro.description, 'tipo': erro.name.upper().replace(' ', '_')}), erro.code


@app.errorhandler(Exception)
def tratar_erro_inesperado(erro):
    db.session.rollback()
    app.logger.exception('Erro inesperado em %s %s', request.method, request.path)
    return jsonify({'error': 'Erro interno do servidor.', 'tipo': 'INTERNAL_ERROR'}), 500


# ===================================================================
# SEÇÃO 8: API (V1)
# ===================================================================

# Cria um Blueprint para a API. Todas as rotas aqui começarão com /api/v1
api_v1 = Blueprint('api_v1', __name__, url_prefix='/api/v1')

# --- Autenticação ---

@api_v1.route('/login', methods=['POST'])
def api_login():
    """Endpoint de login para a API, retorna um token JWT."""
    form = LoginForm().validar()

    user = Usuario.query.filter(func.lower(Usuario.email) == func.lower(form.email.data)).first()
    if not user or not check_password_hash(user.password, form.password.data) or not user.ativo:
        log_audit('LOGIN_FAILED', user_email=form.email.data)
        raise NaoAutorizado('Credenciais inválidas')

    log_audit('LOGIN_SUCCESS', target_obj=user, user_email=user.email)
    return jsonify({'token': gerar_token(user), 'usuario': user.to_dict()})


@api_v1.route('/registrar', methods=['POST'])
def api_registrar():
    form = RegistroForm().validar()
    email = form.email.data.strip().lower()
    if Usuario.query.filter(func.lower(Usuario.email) == email).first():
        raise Conflito('Já existe um usuário com este email.')

    user = Usuario(nome=form.nome.data.strip(), email=email,
                   password=generate_password_hash(form.password.data), role=Role(form.role.data))
    db.session.add(user)
    db.session.commit()
    log_audit('USER_REGISTERED', target_obj=user, user_email=email)
    return jsonify({'token': gerar_token(user), 'usuario': user.to_dict()}), 201


@api_v1.route('/perfil', methods=['GET'])
@login_required
def get_perfil():
    """Retorna os dados do perfil do usuário autenticado via token."""
    dados = current_user.to_dict()
    if current_user.role == Role.ALUNO:
        perfil = PerfilGamificacao.query.filter_by(usuario_id=current_user.id).first()
        xp = perfil.xp if perfil else 0
        dados['nivel'] = calcular_nivel(xp, app.config['NIVEIS']).to_dict()
    return jsonify(dados)


@api_v1.route('/perfil/senha', methods=['POST'])
@login_required
def trocar_senha():
    form = TrocarSenhaForm().validar()
    if not check_password_hash(current_user.password, form.senha_atual.data):
        raise ValidacaoFalhou('Senha atual incorreta.', campos={'senha_atual': ['Senha atual incorreta.']})
    if form.password.data == form.senha_atual.data:
        raise ValidacaoFalhou('A nova senha deve ser diferente da atual.',
                              campos={'password': ['A nova senha deve ser diferente da atual.']})

    primeira_troca = current_user.precisa_trocar_senha
    current_user.password = generate_password_hash(form.password.data)
    current_user.precisa_trocar_senha = False
    db.session.commit()
    log_audit('PASSWORD_CHANGED_FIRST_TIME' if primeira_troca else 'PASSWORD_CHANGED', target_obj=current_user)
    return jsonify({'message': 'Senha atualizada com sucesso!'})


# --- Simulados (bancos de questões) ---

@api_v1.route('/simulados', methods=['GET'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def listar_simulados():
    query = Simulado.query
    if current_user.role != Role.SUPERADMIN:
        query = query.filter_by(docente_id=current_user.id)
    status = filtro_enum(StatusSimulado, 'status')
    if status:
        query = query.filter_by(status=status)
    simulados = query.order_by(Simulado.criado_em.desc()).all()
    return jsonify({'simulados': [s.to_dict(contagens=True) for s in simulados]})


@api_v1.route('/simulados', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def criar_simulado():
    form = SimuladoForm().validar()
    simulado = Simulado(nome=form.nome.data.strip(), descricao=form.descricao.data or None,
                        categoria=form.categoria.data.strip(), subcategoria=form.subcategoria.data or None,
                        status=StatusSimulado(form.status.data), docente_id=current_user.id)
    db.session.add(simulado)
    db.session.commit()
    log_audit('SIMULADO_CREATED', target_obj=simulado)
    return jsonify(simulado.to_dict(contagens=True)), 201


def _simulado_gerenciavel(simulado_id):
    simulado = obter_ou_404(Simulado, simulado_id, 'Simulado não encontrado.')
    exigir_gerencia(simulado.docente_id)
    return simulado


@api_v1.route('/simulados/<int:simulado_id>', methods=['GET'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def obter_simulado(simulado_id):
    simulado = _simulado_gerenciavel(simulado_id)
    dados = simulado.to_dict(contagens=True)
    contagem = dict(db.session.query(Questao.dificuldade, func.count(Questao.id))
                    .filter(Questao.simulado_id == simulado.id, Questao.ativo.is_(True))
                    .group_by(Questao.dificuldade).all())
    dados['questoes_por_dificuldade'] = {d.value: contagem.get(d, 0) for d in Dificuldade}
    return jsonify(dados)


@api_v1.route('/simulados/<int:simulado_id>', methods=['PUT'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def atualizar_simulado(simulado_id):
    simulado = _simulado_gerenciavel(simulado_id)
    form = SimuladoForm().validar(parcial=True)
    for campo in ('nome', 'descricao', 'categoria', 'subcategoria'):
        if form.fornecido(campo):
            setattr(simulado, campo, form[campo].data or None)
    if form.fornecido('status'):
        simulado.status = StatusSimulado(form.status.data)
    if not simulado.nome or not simulado.categoria:
        raise ValidacaoFalhou('Nome e categoria são obrigatórios.')
    db.session.commit()
    log_audit('SIMULADO_UPDATED', target_obj=simulado, details={'campos': list(form.dados)})
    return jsonify(simulado.to_dict(contagens=True))


@api_v1.route('/simulados/<int:simulado_id>', methods=['DELETE'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def excluir_simulado(simulado_id):
    simulado = _simulado_gerenciavel(simulado_id)
    com_tentativas = db.session.query(Tentativa.id).join(Prova, Prova.id == Tentativa.prova_id).filter(Prova.simulado_id == simulado.id).first()
    if com_tentativas:
        raise Conflito('O simulado possui provas já realizadas por alunos e não pode ser excluído.')
    db.session.delete(simulado)
    db.session.commit()
    log_audit('SIMULADO_DELETED', details={'simulado_id': simulado_id, 'nome': simulado.nome})
    return jsonify({'message': 'Simulado excluído com sucesso.'})


@api_v1.route('/simulados/<int:simulado_id>/status', methods=['PATCH'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def alterar_status_simulado(simulado_id):
    simulado = _simulado_gerenciavel(simulado_id)
    form = StatusSimuladoForm().validar()
    anterior = simulado.status.value
    simulado.status = StatusSimulado(form.status.data)
    db.session.commit()
    log_audit('SIMULADO_STATUS_CHANGED', target_obj=simulado, details={'antes': anterior, 'depois': form.status.data})
    return jsonify(simulado.to_dict())


def _copiar_questao(original, simulado_id, ordem):
    copia = Questao(
        simulado_id=simulado_id, enunciado=original.enunciado, tipo=original.tipo,
        dificuldade=original.dificuldade, tags=list(original.tags or []), peso=original.peso,
        imagem_url=original.imagem_url, explicacao=original.explicacao,
        configuracao=dict(original.configuracao) if original.configuracao else None,
        ativo=original.ativo, ordem=ordem,
    )
    copia.alternativas = [Alternativa(texto=a.texto, correta=a.correta, ordem=a.ordem) for a in original.alternativas]
    return copia


@api_v1.route('/simulados/<int:simulado_id>/duplicar', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def duplicar_simulado(simulado_id):
    original = _simulado_gerenciavel(simulado_id)
    copia = Simulado(nome=f'{original.nome} (Cópia)', descricao=original.descricao, categoria=original.categoria,
                     subcategoria=original.subcategoria, status=StatusSimulado.EM_EDICAO,
                     docente_id=current_user.id)
    db.session.add(copia)
    db.session.flush()
    for questao in original.questoes:
        db.session.add(_copiar_questao(questao, copia.id, questao.ordem))
    db.session.commit()
    log_audit('SIMULADO_DUPLICATED', target_obj=copia, details={'origem': original.id})
    return jsonify(copia.to_dict(contagens=True)), 201


# --- Questões ---

def _questao_gerenciavel(questao_id):
    questao = obter_ou_404(Questao, questao_id, 'Questão não encontrada.')
    exigir_gerencia(questao.simulado.docente_id)
    return questao


def _proxima_ordem(simulado_id):
    return (db.session.query(func.max(Questao.ordem)).filter_by(simulado_id=simulado_id).scalar() or 0) + 1


def _nova_questao(form, simulado_id, ordem):
    questao = Questao(
        simulado_id=simulado_id, enunciado=form.enunciado.data.strip(), tipo=TipoQuestao(form.tipo.data),
        dificuldade=Dificuldade(form.dificuldade.data), tags=form.tags.data or [], peso=form.peso.data or 1,
        imagem_url=form.imagem_url.data or None, explicacao=form.explicacao.data or None,
        configuracao=form.configuracao.data, ativo=form.ativo.data, ordem=ordem,
    )
    questao.alternativas = [Alternativa(texto=a['texto'].strip(), correta=bool(a.get('correta')), ordem=i)
                            for i, a in enumerate(form.alternativas.data or [])]
    return questao


@api_v1.route('/simulados/<int:simulado_id>/questoes', methods=['GET'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def listar_questoes(simulado_id):
    simulado = _simulado_gerenciavel(simulado_id)
    query = Questao.query.filter_by(simulado_id=simulado.id)
    dificuldade = filtro_enum(Dificuldade, 'dificuldade')
    if dificuldade:
        query = query.filter_by(dificuldade=dificuldade)
    tipo = filtro_enum(TipoQuestao, 'tipo')
    if tipo:
        query = query.filter_by(tipo=tipo)
    if request.args.get('ativo') is not None:
        query = query.filter_by(ativo=request.args.get('ativo').lower() in ('1', 'true', 'sim'))
    questoes = query.order_by(Questao.ordem, Questao.id).all()
    tag = request.args.get('tag')
    if tag:
        questoes = [q for q in questoes if tag in (q.tags or [])]
    return jsonify({'questoes': [q.to_dict() for q in questoes], 'total': len(questoes)})


@api_v1.route('/simulados/<int:simulado_id>/questoes', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def criar_questao(simulado_id):
    simulado = _simulado_gerenciavel(simulado_id)
    form = QuestaoForm().validar()
    questao = _nova_questao(form, simulado.id, _proxima_ordem(simulado.id))
    db.session.add(questao)
    db.session.commit()
    log_audit('QUESTION_CREATE', target_obj=questao)
    return jsonify(questao.to_dict()), 201


@api_v1.route('/simulados/<int:simulado_id>/questoes/importar', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def importar_questoes(simulado_id):
    """Importa uma lista de questões; qualquer item inválido cancela a importação inteira."""
    simulado = _simulado_gerenciavel(simulado_id)
    itens = (request.get_json(silent=True) or {}).get('questoes')
    if not isinstance(itens, list) or not itens:
        raise ValidacaoFalhou('Envie a lista de questões no campo "questoes".')

    ordem = _proxima_ordem(simulado.id)
    novas = []
    for indice, item in enumerate(itens):
        form = QuestaoForm(dados=item)
        if not form.validate():
            raise ValidacaoFalhou(f'Questão {indice + 1} inválida.', indice=indice, campos=form.erros())
        novas.append(_nova_questao(form, simulado.id, ordem + indice))

    db.session.add_all(novas)
    db.session.commit()
    log_audit('QUESTIONS_IMPORTED', target_obj=simulado, details={'quantidade': len(novas)})
    return jsonify({'importadas': len(novas), 'questoes': [q.to_dict() for q in novas]}), 201


@api_v1.route('/questoes/<int:questao_id>', methods=['GET'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def obter_questao(questao_id):
    return jsonify(_questao_gerenciavel(questao_id).to_dict())


@api_v1.route('/questoes/<int:questao_id>', methods=['PUT'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def atualizar_questao(questao_id):
    questao = _questao_gerenciavel(questao_id)
    form = QuestaoForm().validar(parcial=True)

    for campo in ('enunciado', 'imagem_url', 'explicacao', 'configuracao', 'peso', 'ativo'):
        if form.fornecido(campo):
            setattr(questao, campo, form[campo].data)
    if form.fornecido('tags'):
        questao.tags = form.tags.data or []
    if form.fornecido('tipo'):
        questao.tipo = TipoQuestao(form.tipo.data)
    if form.fornecido('dificuldade'):
        questao.dificuldade = Dificuldade(form.dificuldade.data)
    if form.fornecido('alternativas'):
        questao.alternativas = [Alternativa(texto=str(a.get('texto', '')).strip(), correta=bool(a.get('correta')), ordem=i)
                                for i, a in enumerate(form.alternativas.data or []) if isinstance(a, dict)]

    erros = validar_estrutura_questao(questao.tipo, [a.to_dict() for a in questao.alternativas], questao.configuracao)
    if erros or not questao.enunciado:
        raise ValidacaoFalhou('Dados inválidos.', campos={'_form': erros or ['Enunciado obrigatório.']})

    db.session.commit()
    log_audit('QUESTION_UPDATE', target_obj=questao, details={'campos': list(form.dados)})
    return jsonify(questao.to_dict())


@api_v1.route('/questoes/<int:questao_id>', methods=['DELETE'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def excluir_questao(questao_id):
    questao = _questao_gerenciavel(questao_id)
    if ProvaQuestao.query.filter_by(questao_id=questao.id).first():
        raise Conflito('A questão está em uso por uma prova. Desative-a em vez de excluir.')
    db.session.delete(questao)
    db.session.commit()
    log_audit('QUESTION_DELETE', details={'questao_id': questao_id})
    return jsonify({'message': 'Questão excluída com sucesso.'})


@api_v1.route('/questoes/<int:questao_id>/duplicar', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def duplicar_questao(questao_id):
    original = _questao_gerenciavel(questao_id)
    copia = _copiar_questao(original, original.simulado_id, _proxima_ordem(original.simulado_id))
    db.session.add(copia)
    db.session.commit()
    log_audit('QUESTION_DUPLICATED', target_obj=copia, details={'origem': original.id})
    return jsonify(copia.to_dict()), 201


def _ler_itens_reordenacao(itens):
    if not isinstance(itens, list) or not itens:
        raise ValidacaoFalhou('Envie a lista "itens" com {"id", "ordem"}.')
    ordens = {}
    for item in itens:
        if not isinstance(item, dict) or not isinstance(item.get('id'), int) or not isinstance(item.get('ordem'), int):
            raise ValidacaoFalhou('Cada item deve ter "id" e "ordem" inteiros.', item=item)
        if item['id'] in ordens:
            raise ValidacaoFalhou('Questão repetida na reordenação.', id=item['id'])
        ordens[item['id']] = item['ordem']
    return ordens


@api_v1.route('/questoes/reordenar', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def reordenar_questoes():
    """Reordena questões em lote; um id inválido cancela a operação inteira."""
    ordens = _ler_itens_reordenacao((request.get_json(silent=True) or {}).get('itens'))
    questoes = Questao.query.filter(Questao.id.in_(list(ordens))).all()
    encontradas = {q.id for q in questoes}
    faltando = [i for i in ordens if i not in encontradas]
    if faltando:
        raise NaoEncontrado('Questões não encontradas.', ids=faltando)
    for questao in questoes:
        exigir_gerencia(questao.simulado.docente_id)

    for questao in questoes:
        questao.ordem = ordens[questao.id]
    db.session.commit()
    log_audit('QUESTIONS_REORDERED', details={'quantidade': len(questoes)})
    return jsonify({'message': 'Questões reordenadas com sucesso.', 'quantidade': len(questoes)})


@api_v1.route('/upload', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def upload_imagem():
    arquivo = request.files.get('arquivo') or request.files.get('file')
    if arquivo is None or not arquivo.filename:
        raise ValidacaoFalhou('Nenhum arquivo enviado.')

    conteudo = arquivo.read()
    if len(conteudo) > UPLOAD_IMAGENS['tamanho_maximo']:
        raise ValidacaoFalhou('Arquivo muito grande. Máximo: 5MB.')

    try:
        with Image.open(io.BytesIO(conteudo)) as imagem:
            imagem.verify()
            formato = imagem.format
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValidacaoFalhou('O arquivo enviado não é uma imagem válida.') from exc

    extensao = UPLOAD_IMAGENS['formatos'].get(formato)
    if extensao is None:
        raise ValidacaoFalhou('Tipo de arquivo não permitido. Use JPEG, PNG, GIF ou WebP.', formato=formato)

    pasta = os.path.join(app.config['UPLOAD_FOLDER'], 'questoes')
    os.makedirs(pasta, exist_ok=True)
    nome = f'{uuid.uuid4().hex}.{extensao}'
    with open(os.path.join(pasta, nome), 'wb') as destino:
        destino.write(conteudo)

    log_audit('IMAGE_UPLOADED', details={'arquivo': nome, 'tamanho': len(conteudo)})
    return jsonify({'url': f'/uploads/questoes/{nome}', 'nome': nome}), 201


# --- Provas: geração ---

@api_v1.route('/simulados/<int:simulado_id>/preview-geracao', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def preview_geracao(simulado_id):
    simulado = _simulado_gerenciavel(simulado_id)
    form = GeracaoProvasForm().validar()
    pool = pool_disponivel(simulado, form.dificuldades.data, form.tags.data)
    preview = gerador_provas.previsualizar(pool, form.questoes_por_prova.data, form.percentuais())
    preview['provas_solicitadas'] = form.quantidade_provas.data or 1
    preview['suficiente'] = preview['provas_possiveis'] >= preview['provas_solicitadas']
    return jsonify(preview)


@api_v1.route('/simulados/<int:simulado_id>/gerar-provas', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def gerar_provas(simulado_id):
    simulado = _simulado_gerenciavel(simulado_id)
    form = GeracaoProvasForm().validar()
    quantidade_provas = form.quantidade_provas.data or 1

    pool = pool_disponivel(simulado, form.dificuldades.data, form.tags.data)
    # A ordem gravada fica fácil, média, difícil. `embaralhar_questoes` é
    # aplicado a cada tentativa em questoes_da_tentativa.
    resultado = gerador_provas.montar_provas(
        pool, form.questoes_por_prova.data, quantidade_provas, percentuais=form.percentuais(),
        embaralhar=form.embaralhar.data, substituir=form.substituir.data,
    )
    if resultado.reutilizou_questoes and not form.permitir_repeticao.data:
        raise QuestoesInsuficientes(resultado.aviso, disponiveis=len(pool), provas_solicitadas=quantidade_provas)

    provas = []
    for i, questoes in enumerate(resultado.provas):
        prova = Prova(simulado_id=simulado.id, codigo=gerar_codigo_prova(simulado), status=StatusProva.RASCUNHO,
                      nome=f'{simulado.nome} - Prova {i + 1}')
        form.aplicar(prova)
        if form.nome.data:
            prova.nome = f'{form.nome.data} - Prova {i + 1}' if quantidade_provas > 1 else form.nome.data
        prova.questoes = [ProvaQuestao(questao_id=q.id, ordem=ordem) for ordem, q in enumerate(questoes, start=1)]
        db.session.add(prova)
        db.session.flush()
        provas.append(prova)

    db.session.commit()
    for prova in provas:
        log_audit('PROVA_GENERATED', target_obj=prova, details={'questoes': len(prova.questoes)})

    return jsonify({
        'provas': [p.to_dict() for p in provas],
        'reutilizou_questoes': resultado.reutilizou_questoes,
        'substituicoes': resultado.substituicoes,
        'aviso': resultado.aviso,
    }), 201


# --- Provas: gestão ---

def _prova_gerenciavel(prova_id):
    prova = obter_ou_404(Prova, prova_id, 'Prova não encontrada.')
    exigir_gerencia(prova.docente_id)
    return prova


@api_v1.route('/simulados/<int:simulado_id>/provas', methods=['GET'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def listar_provas(simulado_id):
    simulado = _simulado_gerenciavel(simulado_id)
    query = Prova.query.filter_by(simulado_id=simulado.id)
    status = filtro_enum(StatusProva, 'status')
    if status:
        query = query.filter_by(status=status)
    provas = query.order_by(Prova.criado_em.desc(), Prova.id.desc()).all()
    return jsonify({'provas': [p.to_dict() for p in provas]})


@api_v1.route('/provas/<int:prova_id>', methods=['GET'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def obter_prova(prova_id):
    prova = _prova_gerenciavel(prova_id)
    dados = prova.to_dict(com_questoes=True)
    dados['total_tentativas'] = Tentativa.query.filter_by(prova_id=prova.id).count()
    return jsonify(dados)


@api_v1.route('/provas/<int:prova_id>', methods=['PUT'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def atualizar_prova(prova_id):
    prova = _prova_gerenciavel(prova_id)
    if prova.status == StatusProva.ENCERRADA:
        raise EstadoProvaInvalido('Provas encerradas não podem ser alteradas.')
    form = ConfiguracaoProvaForm().validar(parcial=True)
    form.aplicar(prova, parcial=True)
    if prova.mostrar_resultado == MostrarResultado.DATA and prova.data_resultado is None:
        raise ValidacaoFalhou('Informe a data de liberação do resultado.')
    db.session.commit()
    log_audit('PROVA_UPDATED', target_obj=prova, details={'campos': list(form.dados)})
    return jsonify(prova.to_dict())


@api_v1.route('/provas/<int:prova_id>', methods=['DELETE'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def excluir_prova(prova_id):
    prova = _prova_gerenciavel(prova_id)
    if prova.tentativas:
        raise Conflito('A prova já possui tentativas e não pode ser excluída. Encerre-a em vez disso.')
    db.session.delete(prova)
    db.session.commit()
    log_audit('PROVA_DELETED', details={'prova_id': prova_id, 'codigo': prova.codigo})
    return jsonify({'message': 'Prova excluída com sucesso.'})


@api_v1.route('/provas/<int:prova_id>/publicar', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def publicar_prova(prova_id):
    prova = _prova_gerenciavel(prova_id)
    prova.publicar(app.config['REGRAS_PROVA']['min_questoes_publicacao'])
    for turma_prova in prova.turmas:
        notificar_nova_prova(turma_prova)
    db.session.commit()
    log_audit('PROVA_PUBLISHED', target_obj=prova)
    return jsonify(prova.to_dict())


@api_v1.route('/provas/<int:prova_id>/encerrar', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def encerrar_prova(prova_id):
    prova = _prova_gerenciavel(prova_id)
    prova.encerrar()
    db.session.commit()
    log_audit('PROVA_CLOSED', target_obj=prova)
    return jsonify(prova.to_dict())


@api_v1.route('/provas/<int:prova_id>/duplicar', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def duplicar_prova(prova_id):
    original = _prova_gerenciavel(prova_id)
    copia = Prova(simulado_id=original.simulado_id, codigo=gerar_codigo_prova(original.simulado),
                  status=StatusProva.RASCUNHO, nome=f'{original.nome} (Cópia)')
    for campo in ConfiguracaoProvaForm.CAMPOS_PROVA:
        if campo != 'nome':
            setattr(copia, campo, getattr(original, campo))
    copia.questoes = [ProvaQuestao(questao_id=pq.questao_id, ordem=pq.ordem) for pq in original.questoes]
    db.session.add(copia)
    db.session.commit()
    log_audit('PROVA_DUPLICATED', target_obj=copia, details={'origem': original.id})
    return jsonify(copia.to_dict()), 201


@api_v1.route('/provas/<int:prova_id>/questoes', methods=['PUT'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def definir_questoes_prova(prova_id):
    """
    Define (e ordena) as questões de uma prova em rascunho a partir de uma
    lista de ids. A lista inteira é validada antes de qualquer alteração.
    """
    prova = _prova_gerenciavel(prova_id)
    if prova.status != StatusProva.RASCUNHO:
        raise EstadoProvaInvalido('Apenas provas em rascunho podem ter as questões alteradas.')

    ids = (request.get_json(silent=True) or {}).get('questoes')
    if not isinstance(ids, list) or not ids or not all(isinstance(i, int) for i in ids):
        raise ValidacaoFalhou('Envie a lista de ids no campo "questoes".')
    if len(set(ids)) != len(ids):
        raise ValidacaoFalhou('A lista de questões contém ids repetidos.')

    validas = {q.id for q in Questao.query.filter(Questao.id.in_(ids), Questao.simulado_id == prova.simulado_id)}
    invalidas = [i for i in ids if i not in validas]
    if invalidas:
        raise ValidacaoFalhou('Questões não pertencem ao simulado da prova.', ids=invalidas)

    atuais = {pq.questao_id: pq for pq in prova.questoes}
    novas = []
    for ordem, questao_id in enumerate(ids, start=1):
        pq = atuais.pop(questao_id, None) or ProvaQuestao(questao_id=questao_id)
        pq.ordem = ordem
        novas.append(pq)
    prova.questoes = novas
    db.session.commit()
    log_audit('PROVA_QUESTIONS_SET', target_obj=prova, details={'quantidade': len(ids)})
    return jsonify(prova.to_dict(com_questoes=True))


# --- Tentativas: acompanhamento do docente ---

@api_v1.route('/provas/<int:prova_id>/tentativas', methods=['GET'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def listar_tentativas_prova(prova_id):
    prova = _prova_gerenciavel(prova_id)
    tentativas = Tentativa.query.filter_by(prova_id=prova.id) \
        .order_by(Tentativa.data_inicio.desc(), Tentativa.id.desc()).all()
    return jsonify({'tentativas': [
        dict(t.to_dict(), aluno={'id': t.aluno.id, 'nome': t.aluno.nome, 'email': t.aluno.email})
        for t in tentativas
    ]})


def _tentativa_gerenciavel(tentativa_id):
    tentativa = obter_ou_404(Tentativa, tentativa_id, 'Tentativa não encontrada.')
    exigir_gerencia(tentativa.prova.docente_id)
    return tentativa


@api_v1.route('/tentativas/<int:tentativa_id>', methods=['GET'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def obter_tentativa_docente(tentativa_id):
    """Tentativa com as respostas corrigidas, para o docente dono da prova."""
    tentativa = _tentativa_gerenciavel(tentativa_id)
    dados = serializar_resultado(tentativa)
    dados['aluno'] = {'id': tentativa.aluno.id, 'nome': tentativa.aluno.nome, 'email': tentativa.aluno.email}
    dados['prova'] = {'id': tentativa.prova.id, 'nome': tentativa.prova.nome, 'codigo': tentativa.prova.codigo}
    return jsonify(dados)


def _resposta_da_tentativa(tentativa, prova_questao_id):
    resposta = Resposta.query.filter_by(tentativa_id=tentativa.id, prova_questao_id=prova_questao_id).first()
    if resposta is None:
        raise NaoEncontrado('Resposta não encontrada nesta tentativa.')
    return resposta


@api_v1.route('/tentativas/<int:tentativa_id>/feedback', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def registrar_feedback(tentativa_id):
    tentativa = _tentativa_gerenciavel(tentativa_id)
    if tentativa.status != StatusTentativa.SUBMETIDA:
        raise Conflito('A tentativa ainda não foi submetida.')
    form = FeedbackForm().validar()
    resposta = _resposta_da_tentativa(tentativa, form.prova_questao_id.data)

    resposta.feedback_docente = form.feedback.data.strip()
    resposta.feedback_em = agora()
    criar_notificacao(tentativa.aluno_id, TipoNotificacao.SISTEMA, 'Novo feedback do professor',
                      f'Você recebeu um feedback na prova "{tentativa.prova.nome}".',
                      link=f'/aluno/tentativas/{tentativa.id}/resultado')
    db.session.commit()
    log_audit('FEEDBACK_ADDED', target_obj=tentativa, details={'prova_questao_id': resposta.prova_questao_id})
    return jsonify(resposta.to_dict(com_correcao=True))


@api_v1.route('/tentativas/<int:tentativa_id>/feedback/<int:prova_questao_id>', methods=['DELETE'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def remover_feedback(tentativa_id, prova_questao_id):
    tentativa = _tentativa_gerenciavel(tentativa_id)
    resposta = _resposta_da_tentativa(tentativa, prova_questao_id)
    resposta.feedback_docente = None
    resposta.feedback_em = None
    db.session.commit()
    log_audit('FEEDBACK_REMOVED', target_obj=tentativa, details={'prova_questao_id': prova_questao_id})
    return jsonify({'message': 'Feedback removido.'})


# --- Turmas ---

def _turma_gerenciavel(turma_id):
    turma = obter_ou_404(Turma, turma_id, 'Turma não encontrada.')
    exigir_gerencia(turma.docente_id)
    return turma


@api_v1.route('/turmas', methods=['GET'])
@login_required
def listar_turmas():
    if current_user.role == Role.ALUNO:
        turmas = Turma.query.join(TurmaAluno, TurmaAluno.turma_id == Turma.id).filter(TurmaAluno.aluno_id == current_user.id).all()
    elif current_user.role == Role.SUPERADMIN:
        turmas = Turma.query.order_by(Turma.criado_em.desc()).all()
    else:
        turmas = Turma.query.filter_by(docente_id=current_user.id).order_by(Turma.criado_em.desc()).all()
    return jsonify({'turmas': [t.to_dict() for t in turmas]})


@api_v1.route('/turmas', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def criar_turma():
    form = TurmaForm().validar()
    turma = Turma(nome=form.nome.data.strip(), descricao=form.descricao.data or None, ativa=form.ativa.data,
                  codigo=gerar_codigo_turma(), docente_id=current_user.id)
    db.session.add(turma)
    db.session.commit()
    log_audit('TURMA_CREATED', target_obj=turma)
    return jsonify(turma.to_dict()), 201


@api_v1.route('/turmas/<int:turma_id>', methods=['GET'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def obter_turma(turma_id):
    return jsonify(_turma_gerenciavel(turma_id).to_dict(detalhes=True))


@api_v1.route('/turmas/<int:turma_id>', methods=['PUT'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def atualizar_turma(turma_id):
    turma = _turma_gerenciavel(turma_id)
    form = TurmaForm().validar(parcial=True)
    for campo in ('nome', 'descricao', 'ativa'):
        if form.fornecido(campo):
            setattr(turma, campo, form[campo].data)
    if not turma.nome:
        raise ValidacaoFalhou('O nome da turma é obrigatório.')
    db.session.commit()
    log_audit('TURMA_UPDATED', target_obj=turma, details={'campos': list(form.dados)})
    return jsonify(turma.to_dict())


@api_v1.route('/turmas/<int:turma_id>', methods=['DELETE'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def excluir_turma(turma_id):
    turma = _turma_gerenciavel(turma_id)
    db.session.delete(turma)
    db.session.commit()
    log_audit('TURMA_DELETED', details={'turma_id': turma_id, 'nome': turma.nome})
    return jsonify({'message': 'Turma excluída com sucesso.'})


def _matricular(turma, aluno):
    if aluno.role != Role.ALUNO:
        raise ValidacaoFalhou('Apenas usuários com perfil ALUNO podem entrar em turmas.')
    if TurmaAluno.query.filter_by(turma_id=turma.id, aluno_id=aluno.id).first():
        raise Conflito('O aluno já faz parte desta turma.')
    db.session.add(TurmaAluno(turma_id=turma.id, aluno_id=aluno.id))
    criar_notificacao(aluno.id, TipoNotificacao.TURMA, 'Nova turma',
                      f'Você agora faz parte da turma {turma.nome}.', link=f'/turmas/{turma.id}')


@api_v1.route('/turmas/<int:turma_id>/alunos', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def adicionar_aluno(turma_id):
    turma = _turma_gerenciavel(turma_id)
    form = AlunoTurmaForm().validar()
    if form.aluno_id.data:
        aluno = db.session.get(Usuario, form.aluno_id.data)
    else:
        aluno = Usuario.query.filter(func.lower(Usuario.email) == form.email.data.lower()).first()
    if aluno is None:
        raise NaoEncontrado('Aluno não encontrado.')
    _matricular(turma, aluno)
    db.session.commit()
    log_audit('TURMA_STUDENT_ADDED', target_obj=turma, details={'aluno_id': aluno.id})
    return jsonify(turma.to_dict(detalhes=True)), 201


@api_v1.route('/turmas/<int:turma_id>/alunos/<int:aluno_id>', methods=['DELETE'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def remover_aluno(turma_id, aluno_id):
    turma = _turma_gerenciavel(turma_id)
    matricula = TurmaAluno.query.filter_by(turma_id=turma.id, aluno_id=aluno_id).first()
    if matricula is None:
        raise NaoEncontrado('O aluno não faz parte desta turma.')
    db.session.delete(matricula)
    db.session.commit()
    log_audit('TURMA_STUDENT_REMOVED', target_obj=turma, details={'aluno_id': aluno_id})
    return jsonify({'message': 'Aluno removido da turma.'})


@api_v1.route('/turmas/<int:turma_id>/importar-alunos', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def importar_alunos(turma_id):
    """
    Importa uma lista de alunos ({nome, email}) já obtida de um sistema
    externo. Contas inexistentes são criadas com uma senha provisória,
    devolvida na resposta, que o aluno precisa trocar no primeiro acesso.
    """
    turma = _turma_gerenciavel(turma_id)
    registros = (request.get_json(silent=True) or {}).get('alunos')
    if not isinstance(registros, list) or not registros:
        raise ValidacaoFalhou('Envie a lista de alunos no campo "alunos".')

    criados = matriculados = ja_matriculados = 0
    ignorados = []
    contas_criadas = []
    for registro in registros:
        if not isinstance(registro, dict):
            ignorados.append({'registro': registro, 'motivo': 'registro inválido'})
            continue
        email = str(registro.get('email') or '').strip().lower()
        nome = str(registro.get('nome') or '').strip()
        if '@' not in email or not nome:
            ignorados.append({'registro': registro, 'motivo': 'nome ou email inválido'})
            continue

        aluno = Usuario.query.filter(func.lower(Usuario.email) == email).first()
        if aluno is None:
            senha_provisoria = gerar_senha_provisoria()
            aluno = Usuario(nome=nome, email=email, role=Role.ALUNO, precisa_trocar_senha=True,
                            password=generate_password_hash(senha_provisoria))
            db.session.add(aluno)
            db.session.flush()
            criados += 1
            contas_criadas.append({'email': email, 'senha_provisoria': senha_provisoria})
        elif aluno.role != Role.ALUNO:
            ignorados.append({'registro': registro, 'motivo': 'usuário não é aluno'})
            continue

        if TurmaAluno.query.filter_by(turma_id=turma.id, aluno_id=aluno.id).first():
            ja_matriculados += 1
            continue
        _matricular(turma, aluno)
        db.session.flush()
        matriculados += 1

    db.session.commit()
    log_audit('TURMA_ROSTER_IMPORTED', target_obj=turma,
              details={'criados': criados, 'matriculados': matriculados, 'ignorados': len(ignorados)})
    return jsonify({'criados': criados, 'matriculados': matriculados, 'ja_matriculados': ja_matriculados,
                    'ignorados': ignorados, 'contas_criadas': contas_criadas})


@api_v1.route('/turmas/<int:turma_id>/provas', methods=['POST'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def atribuir_prova(turma_id):
    turma = _turma_gerenciavel(turma_id)
    form = AtribuicaoProvaForm().validar()
    prova = _prova_gerenciavel(form.prova_id.data)
    if prova.status == StatusProva.ENCERRADA:
        raise EstadoProvaInvalido('Provas encerradas não podem ser atribuídas.')
    if TurmaProva.query.filter_by(turma_id=turma.id, prova_id=prova.id).first():
        raise Conflito('A prova já está atribuída a esta turma.')

    turma_prova = TurmaProva(turma_id=turma.id, prova_id=prova.id,
                             data_inicio=form.data_inicio.data, data_fim=form.data_fim.data)
    db.session.add(turma_prova)
    db.session.flush()
    if prova.status == StatusProva.PUBLICADA:
        notificar_nova_prova(turma_prova)
    db.session.commit()
    log_audit('TURMA_PROVA_ASSIGNED', target_obj=turma, details={'prova_id': prova.id})
    return jsonify(turma_prova.to_dict()), 201


@api_v1.route('/turmas/<int:turma_id>/provas/<int:prova_id>', methods=['DELETE'])
@login_required
@role_required(Role.DOCENTE, Role.SUPERADMIN)
def remover_prova_turma(turma_id, prova_id):
    turma = _turma_gerenciavel(turma_id)
    turma_prova = TurmaProva.query.filter_by(turma_id=turma.id, prova_id=prova_id).first()
    if turma_prova is None:
        raise NaoEncontrado('A prova não está atribuída a esta turma.')
    db.session.delete(turma_prova)
    db.session.commit()
    log_audit('TURMA_PROVA_UNASSIGNED', target_obj=turma, details={'prova_id': prova_id})
    return jsonify({'message': 'Prova removida da turma.'})


@api_v1.route('/turmas/entrar', methods=['POST'])
@login_required
@role_required(Role.ALUNO)
def entrar_turma():
    form = EntrarTurmaForm().validar()
    turma = Turma.query.filter_by(codigo=form.codigo.data.strip().upper()).first()
    if turma is None or not turma.ativa:
        raise NaoEncontrado('Turma não encontrada ou inativa.')
    _matricular(turma, current_user)
    db.session.commit()
    log_audit('TURMA_JOINED', target_obj=turma)
    return jsonify(turma.to_dict()), 201


# --- Aluno: provas e tentativas ---

@api_v1.route('/aluno/provas', methods=['GET'])
@login_required
@role_required(Role.ALUNO)
def provas_do_aluno():
    """Provas atribuídas às turmas do aluno, com a situação de cada uma."""
    momento = agora()
    atribuicoes = TurmaProva.query.join(Turma, Turma.id == TurmaProva.turma_id) \
        .join(TurmaAluno, TurmaAluno.turma_id == Turma.id) \
        .join(Prova, Prova.id == TurmaProva.prova_id).filter(
        TurmaAluno.aluno_id == current_user.id, Turma.ativa.is_(True),
        Prova.status.in_([StatusProva.PUBLICADA, StatusProva.ENCERRADA]),
    ).order_by(TurmaProva.data_inicio).all()

    por_prova = {}
    for tp in atribuicoes:
        por_prova.setdefault(tp.prova_id, []).append(tp)

    output = []
    for prova_id, janelas in por_prova.items():
        prova = janelas[0].prova
        tentativas = Tentativa.query.filter_by(prova_id=prova_id, aluno_id=current_user.id).all()
        aberta = prova.status == StatusProva.PUBLICADA and any(
            j.data_inicio <= momento <= j.data_fim for j in janelas)
        em_andamento = next((t for t in tentativas if t.status == StatusTentativa.EM_ANDAMENTO), None)
        submetidas = [t for t in tentativas if t.status == StatusTentativa.SUBMETIDA]
        considerada = correcao.tentativa_considerada(tentativas, prova.nota_considerada)
        liberado = resultado_liberado(prova)

        output.append({
            'prova': {'id': prova.id, 'nome': prova.nome, 'codigo': prova.codigo, 'status': prova.status.value,
                      'tempo_limite': prova.tempo_limite, 'total_questoes': len(prova.questoes),
                      'tentativas_max': prova.tentativas_max, 'nota_minima': prova.nota_minima},
            'janelas': [{'turma_id': j.turma_id, 'data_inicio': _iso(j.data_inicio), 'data_fim': _iso(j.data_fim)}
                        for j in janelas],
            'disponivel': aberta,
            'tentativas_realizadas': len(submetidas),
            'tentativa_em_andamento': em_andamento.id if em_andamento else None,
            'nota_final': considerada.nota if considerada and liberado else None,
        })
    return jsonify({'provas': output})


@api_v1.route('/aluno/provas/<int:prova_id>/iniciar', methods=['POST'])
@login_required
@role_required(Role.ALUNO)
def iniciar_tentativa(prova_id):
    prova = obter_ou_404(Prova, prova_id, 'Prova não encontrada.')
    if prova.status != StatusProva.PUBLICADA:
        raise EstadoProvaInvalido('A prova não está disponível.', status=prova.status.value)

    momento = agora()
    if janela_disponivel(current_user.id, prova.id, momento) is None:
        raise AcessoNegado('Prova não disponível para você neste momento.')

    tentativas = Tentativa.query.filter_by(prova_id=prova.id, aluno_id=current_user.id).all()
    correcao.verificar_nova_tentativa(tentativas, prova.tentativas_max, prova.intervalo_tentativas, momento)

    tentativa = Tentativa(prova_id=prova.id, aluno_id=current_user.id, numero=len(tentativas) + 1,
                          status=StatusTentativa.EM_ANDAMENTO, data_inicio=momento,
                          total_questoes=len(prova.questoes))
    db.session.add(tentativa)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise Conflito('Já existe uma tentativa sendo iniciada para esta prova.') from exc

    log_audit('ATTEMPT_STARTED', target_obj=tentativa, details={'prova_id': prova.id})
    dados = tentativa.to_dict(com_nota=False)
    dados['questoes'] = questoes_da_tentativa(tentativa)
    dados['tempo_limite'] = prova.tempo_limite
    return jsonify(dados), 201


@api_v1.route('/aluno/provas/<int:prova_id>/nota-final', methods=['GET'])
@login_required
@role_required(Role.ALUNO)
def nota_final(prova_id):
    prova = obter_ou_404(Prova, prova_id, 'Prova não encontrada.')
    tentativas = Tentativa.query.filter_by(prova_id=prova.id, aluno_id=current_user.id).all()
    if not resultado_liberado(prova):
        return jsonify({'resultado_disponivel': False, 'data_resultado': _iso(prova.data_resultado)})

    considerada = correcao.tentativa_considerada(tentativas, prova.nota_considerada)
    return jsonify({
        'resultado_disponivel': True,
        'politica': prova.nota_considerada.value,
        'tentativas_submetidas': sum(1 for t in tentativas if t.status == StatusTentativa.SUBMETIDA),
        'tentativa_id': considerada.id if considerada else None,
        'nota': considerada.nota if considerada else None,
        'aprovado': correcao.aprovado(considerada.nota, prova.nota_minima) if considerada else False,
        'nota_minima': prova.nota_minima,
    })


def _tentativa_do_aluno(tentativa_id):
    tentativa = obter_ou_404(Tentativa, tentativa_id, 'Tentativa não encontrada.')
    if tentativa.aluno_id != current_user.id:
        raise NaoEncontrado('Tentativa não encontrada.')
    return tentativa


@api_v1.route('/aluno/tentativas/<int:tentativa_id>', methods=['GET'])
@login_required
@role_required(Role.ALUNO)
def obter_tentativa(tentativa_id):
    tentativa = _tentativa_do_aluno(tentativa_id)
    prova = tentativa.prova
    momento = agora()
    dados = tentativa.to_dict(com_nota=tentativa.status == StatusTentativa.SUBMETIDA and resultado_liberado(prova))
    dados['questoes'] = questoes_da_tentativa(tentativa)
    dados['respostas'] = [r.to_dict() for r in tentativa.respostas]
    dados['tempo_limite'] = prova.tempo_limite
    if tentativa.status == StatusTentativa.EM_ANDAMENTO:
        limite = tentativa.data_inicio + timedelta(minutes=prova.tempo_limite)
        dados['tempo_restante'] = max(0, int((limite - momento).total_seconds()))
        dados['tempo_esgotado'] = correcao.tempo_esgotado(tentativa.data_inicio, prova.tempo_limite, momento)
    return jsonify(dados)


@api_v1.route('/aluno/tentativas/<int:tentativa_id>/responder', methods=['POST'])
@login_required
@role_required(Role.ALUNO)
def responder(tentativa_id):
    tentativa = _tentativa_do_aluno(tentativa_id)
    if tentativa.status != StatusTentativa.EM_ANDAMENTO:
        raise Conflito('A tentativa já foi finalizada.')
    if correcao.tempo_esgotado(tentativa.data_inicio, tentativa.prova.tempo_limite, agora(),
                               app.config['TOLERANCIA_TEMPO_SEGUNDOS']):
        raise Conflito('O tempo da prova esgotou. Submeta a tentativa.')

    form = RespostaForm().validar()
    prova_questao = ProvaQuestao.query.filter_by(id=form.prova_questao_id.data, prova_id=tentativa.prova_id).first()
    if prova_questao is None:
        raise ValidacaoFalhou('A questão não pertence a esta prova.')

    resposta = Resposta.query.filter_by(tentativa_id=tentativa.id, prova_questao_id=prova_questao.id).first()
    if resposta is None:
        resposta = Resposta(tentativa_id=tentativa.id, prova_questao_id=prova_questao.id,
                            questao_id=prova_questao.questao_id)
        db.session.add(resposta)
    if form.fornecido('resposta'):
        resposta.resposta = form.resposta.data
    if form.fornecido('marcada_revisao'):
        resposta.marcada_revisao = form.marcada_revisao.data
    if form.tempo_resposta.data is not None:
        resposta.tempo_resposta = form.tempo_resposta.data
    resposta.respondida_em = agora()

    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise Conflito('Resposta enviada em duplicidade; tente novamente.') from exc
    return jsonify({'message': 'Resposta salva.', 'resposta': resposta.to_dict()})


@api_v1.route('/aluno/tentativas/<int:tentativa_id>/submeter', methods=['POST'])
@login_required
@role_required(Role.ALUNO)
def submeter_tentativa(tentativa_id):
    tentativa = _tentativa_do_aluno(tentativa_id)
    momento = agora()

    # Reivindica a tentativa: só uma submissão concorrente consegue mudar o status
    reivindicada = db.session.execute(
        update(Tentativa)
        .where(Tentativa.id == tentativa.id, Tentativa.status == StatusTentativa.EM_ANDAMENTO)
        .values(status=StatusTentativa.SUBMETIDA, data_fim=momento)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if not reivindicada:
        raise Conflito('A tentativa já foi submetida.')
    db.session.refresh(tentativa)

    prova = tentativa.prova
    respostas = {r.prova_questao_id: r for r in tentativa.respostas}
    acertos_em_ordem = []
    for pq in prova.questoes:
        resposta = respostas.get(pq.id)
        if resposta is None:
            acertos_em_ordem.append(False)
            continue
        questao = pq.questao
        resultado = correcao.avaliar_resposta(questao.tipo, resposta.resposta, questao.alternativas,
                                              questao.configuracao)
        resposta.correta = resultado.correta
        resposta.pontuacao = resultado.pontuacao
        acertos_em_ordem.append(resultado.correta)

    pontuacao = correcao.pontuar(respostas.values(), len(prova.questoes))
    tentativa.nota = pontuacao.percentual
    tentativa.total_acertos = pontuacao.total_acertos
    tentativa.total_questoes = len(prova.questoes)
    tentativa.aprovado = correcao.aprovado(pontuacao.percentual, prova.nota_minima)
    tentativa.acertos_consecutivos = correcao.maior_sequencia_acertos(acertos_em_ordem)
    tentativa.tempo_gasto = min(int((momento - tentativa.data_inicio).total_seconds()), prova.tempo_limite * 60)
    db.session.flush()

    premiacao = premiar_tentativa(tentativa)
    liberado = resultado_liberado(prova)
    if liberado:
        criar_notificacao(tentativa.aluno_id, TipoNotificacao.RESULTADO_DISPONIVEL, 'Resultado disponível',
                          f'Seu resultado na prova "{prova.nome}" está disponível.',
                          link=f'/aluno/tentativas/{tentativa.id}/resultado')
    db.session.commit()

    log_audit('ATTEMPT_SUBMITTED', target_obj=tentativa,
              details={'nota': tentativa.nota, 'aprovado': tentativa.aprovado})
    if liberado:
        enviar_email(current_user.email, f'Resultado: {prova.nome}',
                     f'<p>Olá, {current_user.nome}!</p><p>Você obteve <strong>{tentativa.nota:.0f}%</strong> '
                     f'na prova {prova.nome}.</p>')

    dados = {
        'tentativa': tentativa.to_dict(com_nota=liberado),
        'resultado_disponivel': liberado,
        'gamificacao': {
            'xp_ganho': premiacao.xp_delta,
            'subiu_nivel': premiacao.level_ups > 0,
            'nivel': premiacao.nivel_novo,
            'novas_conquistas': [c.to_dict() for c in premiacao.novas_conquistas],
        },
    }
    if not liberado:
        dados['data_resultado'] = _iso(prova.data_resultado)
    return jsonify(dados)


@api_v1.route('/aluno/tentativas/<int:tentativa_id>/resultado', methods=['GET'])
@login_required
@role_required(Role.ALUNO)
def resultado_tentativa(tentativa_id):
    tentativa = _tentativa_do_aluno(tentativa_id)
    if tentativa.status != StatusTentativa.SUBMETIDA:
        raise Conflito('A tentativa ainda não foi submetida.')
    prova = tentativa.prova
    if not resultado_liberado(prova):
        return jsonify({'resultado_disponivel': False, 'data_resultado': _iso(prova.data_resultado)})
    return jsonify(serializar_resultado(tentativa))


# --- Certificados ---

def _certificado_acessivel(tentativa_id):
    tentativa = obter_ou_404(Tentativa, tentativa_id, 'Tentativa não encontrada.')
    if tentativa.aluno_id != current_user.id and not pode_gerenciar(
            current_user.id, current_user.role, tentativa.prova.docente_id):
        raise NaoEncontrado('Tentativa não encontrada.')
    return tentativa


@api_v1.route('/certificados/<int:tentativa_id>', methods=['GET'])
@login_required
def obter_certificado(tentativa_id):
    """Retorna o certificado da tentativa, emitindo-o na primeira consulta do aluno."""
    tentativa = _certificado_acessivel(tentativa_id)
    certificado = Certificado.query.filter_by(tentativa_id=tentativa.id).first()
    if certificado is not None:
        return jsonify(certificado.to_dict())
    if tentativa.aluno_id != current_user.id:
        raise NaoEncontrado('Certificado ainda não emitido.')

    prova = tentativa.prova
    if not resultado_liberado(prova):
        raise AcessoNegado('O resultado desta prova ainda não foi liberado.')
    certificados.verificar_elegibilidade(tentativa, prova.nota_minima)

    emissao = agora()
    certificado = Certificado(
        codigo=certificados.gerar_codigo(tentativa.id, current_user.email, emissao),
        aluno_id=current_user.id, tentativa_id=tentativa.id, titulo=prova.nome,
        categoria=prova.simulado.categoria, nota=tentativa.nota, nota_minima=prova.nota_minima,
        data_emissao=emissao,
        data_validade=certificados.calcular_validade(emissao, app.config['CERTIFICADO_VALIDADE_DIAS']),
    )
    db.session.add(certificado)
    try:
        db.session.commit()
    except IntegrityError:
        # Emissão concorrente: vale o certificado que foi gravado primeiro
        db.session.rollback()
        certificado = Certificado.query.filter_by(tentativa_id=tentativa.id).first()
        if certificado is None:
            raise
        return jsonify(certificado.to_dict())

    log_audit('CERTIFICATE_ISSUED', target_obj=certificado, details={'codigo': certificado.codigo})
    return jsonify(certificado.to_dict()), 201


@api_v1.route('/certificados/<int:tentativa_id>/pdf', methods=['GET'])
@login_required
def certificado_pdf(tentativa_id):
    from weasyprint import HTML

    tentativa = _certificado_acessivel(tentativa_id)
    certificado = Certificado.query.filter_by(tentativa_id=tentativa.id).first()
    if certificado is None:
        raise NaoEncontrado('Certificado ainda não emitido.')

    html_renderizado = render_template(
        'app/certificados/certificado_pdf.html',
        certificado=certificado,
        url_validacao=request.host_url.rstrip('/') + f'/api/v1/certificados/validar/{certificado.codigo}',
    )
    pdf = HTML(string=html_renderizado).write_pdf()

    response = make_response(pdf)
    response.headers['Content-Type'] = 'application/pdf'
    response.headers['Content-Disposition'] = f'inline; filename=certificado_{certificado.codigo}.pdf'
    log_audit('CERTIFICATE_PDF_GENERATED', target_obj=certificado)
    return response


@api_v1.route('/certificados/validar/<codigo>', methods=['GET'])
def validar_certificado(codigo):
    certificado = Certificado.query.filter_by(codigo=codigo.strip().upper()).first()
    if certificado is None:
        raise NaoEncontrado('Certificado não encontrado.', valido=False)
    dados = certificados.situacao(certificado.data_validade, agora())
    dados['certificado'] = certificado.to_dict()
    return jsonify(dados)


# --- Gamificação ---

@api_v1.route('/gamificacao/me', methods=['GET'])
@login_required
@role_required(Role.ALUNO)
def gamificacao_me():
    perfil = obter_perfil(current_user.id)
    db.session.commit()
    nivel = calcular_nivel(perfil.xp, app.config['NIVEIS'])
    total_conquistas = UsuarioConquista.query.filter_by(usuario_id=current_user.id).count()
    acima = db.session.query(func.count(PerfilGamificacao.id)).filter(PerfilGamificacao.xp > perfil.xp).scalar()
    return jsonify({
        'xp': perfil.xp,
        'nivel': nivel.to_dict(),
        'streak': perfil.streak,
        'maior_streak': perfil.maior_streak,
        'aprovacoes_seguidas': perfil.aprovacoes_seguidas,
        'conquistas_desbloqueadas': total_conquistas,
        'conquistas_total': Conquista.query.count(),
        'posicao_geral': acima + 1,
        'ultima_atividade': _iso(perfil.ultima_atividade),
    })


@api_v1.route('/gamificacao/conquistas', methods=['GET'])
@login_required
@role_required(Role.ALUNO)
def gamificacao_conquistas():
    desbloqueadas = {uc.conquista_id: uc for uc in UsuarioConquista.query.filter_by(usuario_id=current_user.id)}
    historico = historico_gamificacao(current_user.id)
    output = []
    for conquista in Conquista.query.order_by(Conquista.ordem).all():
        unlock = desbloqueadas.get(conquista.id)
        dados = conquista.to_dict()
        dados['desbloqueada'] = unlock is not None
        dados['desbloqueada_em'] = _iso(unlock.desbloqueada_em) if unlock else None
        dados.update(progresso_conquista(conquista, historico, unlock is not None))
        output.append(dados)
    return jsonify({'conquistas': output, 'desbloqueadas': len(desbloqueadas), 'total': len(output)})


@api_v1.route('/gamificacao/leaderboard', methods=['GET'])
@login_required
def leaderboard():
    """
    Ranking por XP. Por padrão considera apenas o XP ganho nos últimos
    `periodo` dias; `escopo=total` usa o XP acumulado de todos os alunos.
    """
    escopo = request.args.get('escopo', 'periodo')
    if escopo not in ('periodo', 'total'):
        raise ValidacaoFalhou('Escopo inválido. Use "periodo" ou "total".')
    periodo = request.args.get('periodo', 30, type=int)
    limite = request.args.get('limit', 50, type=int)
    if not 1 <= periodo <= 365 or not 1 <= limite <= 100:
        raise ValidacaoFalhou('Use periodo entre 1 e 365 dias e limit entre 1 e 100.')

    if escopo == 'periodo':
        desde = agora() - timedelta(days=periodo)
        xp = func.sum(EventoXP.quantidade).label('xp')
        alcancado = func.max(EventoXP.criado_em).label('alcancado_em')
        linhas = db.session.query(EventoXP.usuario_id, xp, alcancado).filter(EventoXP.criado_em >= desde) \
            .group_by(EventoXP.usuario_id).order_by(xp.desc(), alcancado, EventoXP.usuario_id).limit(limite).all()

        meu_xp = db.session.query(func.sum(EventoXP.quantidade)).filter(
            EventoXP.usuario_id == current_user.id, EventoXP.criado_em >= desde).scalar()
        totais = db.session.query(func.sum(EventoXP.quantidade).label('xp')).filter(EventoXP.criado_em >= desde) \
            .group_by(EventoXP.usuario_id).subquery()
    else:
        desde = None
        xp = func.coalesce(PerfilGamificacao.xp, 0).label('xp')
        alcancado = func.coalesce(PerfilGamificacao.xp_atualizado_em, Usuario.criado_em).label('alcancado_em')
        linhas = db.session.query(Usuario.id, xp, alcancado) \
            .outerjoin(PerfilGamificacao, PerfilGamificacao.usuario_id == Usuario.id) \
            .filter(Usuario.role == Role.ALUNO, Usuario.ativo.is_(True)) \
            .order_by(xp.desc(), alcancado, Usuario.id).limit(limite).all()

        perfil = PerfilGamificacao.query.filter_by(usuario_id=current_user.id).first()
        meu_xp = perfil.xp if perfil else (0 if current_user.role == Role.ALUNO else None)
        totais = db.session.query(xp).select_from(Usuario) \
            .outerjoin(PerfilGamificacao, PerfilGamificacao.usuario_id == Usuario.id) \
            .filter(Usuario.role == Role.ALUNO, Usuario.ativo.is_(True)).subquery()

    ranking = ordenar_ranking([(u, int(x), em) for u, x, em in linhas], limite)
    nomes = dict(db.session.query(Usuario.id, Usuario.nome).filter(Usuario.id.in_([r['usuario_id'] for r in ranking])))
    for linha in ranking:
        linha['nome'] = nomes.get(linha['usuario_id'])
        linha['nivel'] = calcular_nivel(linha['xp'], app.config['NIVEIS']).nivel
        linha['alcancado_em'] = _iso(linha['alcancado_em'])

    minha_posicao = None
    if meu_xp is not None:
        acima = db.session.query(func.count()).select_from(totais).filter(totais.c.xp > meu_xp).scalar()
        minha_posicao = {'posicao': acima + 1, 'xp': int(meu_xp)}

    return jsonify({
        'escopo': escopo,
        'periodo': periodo if escopo == 'periodo' else None,
        'desde': _iso(desde),
        'ranking': ranking,
        'minha_posicao': minha_posicao,
    })


# --- Notificações ---

@api_v1.route('/notificacoes', methods=['GET'])
@login_required
def listar_notificacoes():
    query = Notificacao.query.filter_by(usuario_id=current_user.id)
    if request.args.get('nao_lidas', '').lower() in ('1', 'true', 'sim'):
        query = query.filter_by(lida=False)
    notificacoes = query.order_by(Notificacao.criado_em.desc(), Notificacao.id.desc()).limit(100).all()
    nao_lidas = Notificacao.query.filter_by(usuario_id=current_user.id, lida=False).count()
    return jsonify({'notificacoes': [n.to_dict() for n in notificacoes], 'nao_lidas': nao_lidas})


@api_v1.route('/notificacoes/<int:notificacao_id>/lida', methods=['POST'])
@login_required
def marcar_notificacao_lida(notificacao_id):
    notificacao = db.session.get(Notificacao, notificacao_id)
    if notificacao is None or notificacao.usuario_id != current_user.id:
        raise NaoEncontrado('Notificação não encontrada.')
    notificacao.lida = True
    db.session.commit()
    return jsonify(notificacao.to_dict())


# ===================================================================
# SEÇÃO 9: ARQUIVOS ENVIADOS
# ===================================================================

@app.route('/uploads/<path:nome>')
def arquivo_enviado(nome):
    return send_from_directory(app.config['UPLOAD_FOLDER'], nome)


# ===================================================================
# SEÇÃO 10: REGISTRO DOS BLUEPRINTS E EXECUÇÃO
# ===================================================================

app.register_blueprint(api_v1)

# Bloco de execução padrão para rodar a aplicação Flask
if __name__ == '__main__':
    with app.app_context():
        # Em produção, o esquema é gerenciado pelas migrações.
        db.create_all()
    app.run(debug=os.getenv('FLASK_DEBUG') == '1')
